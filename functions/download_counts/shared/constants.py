"""
Shared constants for download-counts.
"""

# External APIs
NPM_DOWNLOADS_API = "https://api.npmjs.org"
NPM_REGISTRY = "https://registry.npmjs.org"
NAMES_PACKAGE = "all-the-package-names"

# Period queried on the downloads endpoint
DEFAULT_TIME_RANGE = "last-month"

# Maximum number of packages in one bulk query, per
# https://github.com/npm/registry/blob/main/docs/download-counts.md
BULK_QUERY_BATCH_SIZE = 128

# Batches this small are demoted to single queries instead of split again
DEMOTE_THRESHOLD = 3

# Self-imposed throttling. The /downloads limiter is undocumented; these
# values have been observed to stay clear of 429s.
MAX_SIMULTANEOUS_REQUESTS = 20
MIN_REQUEST_INTERVAL_SECONDS = 0.5

# Used when a 429 arrives without a usable Retry-After header
FALLBACK_RETRY_AFTER_SECONDS = 60 * 60

# Unexpected failures (5xx, network errors) tolerated per invocation
MAX_REQUEST_ERRORS = 80

# API calls per invocation before the shard is written and the run exits
QUERY_BUDGET = 100_000
PROGRESS_LOG_INTERVAL = 250

# Timeouts
DEFAULT_TIMEOUT = 30.0

# Release major version; see release.versioning
RELEASE_MAJOR = 2

# Download bands for the merged dataset summary
STATS_INTERVALS = [0, 1, 10, 100, 250, 500, 1000, 5000, 10000, 25000, 50000, 100000]
