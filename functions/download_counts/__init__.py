"""Last-month download counts for every npm package, built incrementally."""

__version__ = "2.0.0"
