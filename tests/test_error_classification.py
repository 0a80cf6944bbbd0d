"""
Tests for downloads API status classification.
"""

import pytest

from download_counts.shared.error_classification import (
    Outcome,
    classify_bulk_status,
    classify_single_status,
)


class TestClassifyBulkStatus:
    def test_ok(self):
        assert classify_bulk_status(200) == Outcome.SUCCESS

    @pytest.mark.parametrize("status", [400, 403])
    def test_shape_rejections_split(self, status):
        """Too-long and WAF-blocked batches are split, not retried."""
        assert classify_bulk_status(status) == Outcome.SPLIT

    @pytest.mark.parametrize("status", [404, 500, 502, 503, 504])
    def test_other_statuses_retried(self, status):
        assert classify_bulk_status(status) == Outcome.RETRY


class TestClassifySingleStatus:
    def test_ok(self):
        assert classify_single_status(200) == Outcome.SUCCESS

    def test_403_blocked(self):
        assert classify_single_status(403) == Outcome.BLOCKED

    def test_404_not_found(self):
        assert classify_single_status(404) == Outcome.NOT_FOUND

    @pytest.mark.parametrize("status", [400, 500, 502, 503])
    def test_other_statuses_retried(self, status):
        assert classify_single_status(status) == Outcome.RETRY
