"""
Classification of downloads API responses.

Centralizes the status-code decisions used by the fetch workers so that
bulk and single queries are handled consistently.

Bulk queries:
    400 - request too long ("Request Header Or Cookie Too Large"); only
          happens for batches of unusually long names.
    403 - the WAF in front of api.npmjs.org heuristically blocks some
          names and some combinations of names. Retrying the same
          request gives the same result.
    Both are fixed by splitting the batch, so neither counts as an error.

Single queries:
    403 - the WAF will never let this name through; record it.
    404 - only ever returned for single queries; the package was
          unpublished after the name list was built. Drop it.
"""

from enum import Enum


class Outcome(Enum):
    SUCCESS = "success"
    SPLIT = "split"  # bulk request rejected for its shape
    RETRY = "retry"  # unexpected status, requeue and count an error
    NOT_FOUND = "not_found"
    BLOCKED = "blocked"


SHAPE_REJECTION_STATUSES = (400, 403)


def classify_bulk_status(status_code: int) -> Outcome:
    """Classify the status of a bulk (comma-joined) query."""
    if status_code == 200:
        return Outcome.SUCCESS
    if status_code in SHAPE_REJECTION_STATUSES:
        return Outcome.SPLIT
    return Outcome.RETRY


def classify_single_status(status_code: int) -> Outcome:
    """Classify the status of a single-package query."""
    if status_code == 200:
        return Outcome.SUCCESS
    if status_code == 403:
        return Outcome.BLOCKED
    if status_code == 404:
        return Outcome.NOT_FOUND
    return Outcome.RETRY
