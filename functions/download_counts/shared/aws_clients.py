"""
Lazy boto3 client factory.

The S3 client is only needed when the S3 store or publisher is selected,
so it is created on first use.
"""

_s3 = None


def get_s3():
    """Get S3 client, creating it lazily on first use."""
    global _s3
    if _s3 is None:
        import boto3
        _s3 = boto3.client("s3")
    return _s3


def reset_clients():
    """Reset cached clients. Used in tests for clean state."""
    global _s3
    _s3 = None
