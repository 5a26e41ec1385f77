"""
Unit tests for log redaction.
"""

import logging

from tasklink.core.logging import TokenRedactionFilter, redact


class TestRedact:
    def test_masks_github_tokens(self):
        assert redact("token gho_abcdefghijklmnop used") == "token [REDACTED] used"
        assert "github_pat_" not in redact("github_pat_11ABCDEFG_abcdefghijk")

    def test_masks_bearer_and_query_tokens_keeping_prefix(self):
        assert redact("Authorization: Bearer abc.def.ghi123") == (
            "Authorization: Bearer [REDACTED]"
        )
        assert redact("GET /x?access_token=secret123&page=2") == (
            "GET /x?access_token=[REDACTED]&page=2"
        )

    def test_plain_text_untouched(self):
        assert redact("Connection 4 synced 12 commits") == "Connection 4 synced 12 commits"


class TestTokenRedactionFilter:
    def test_rewrites_formatted_record(self):
        record = logging.LogRecord(
            "tasklink", logging.WARNING, __file__, 1,
            "exchange failed for %s", ("ghp_abcdefghijklmnop",), None,
        )

        assert TokenRedactionFilter().filter(record)
        assert record.getMessage() == "exchange failed for [REDACTED]"

    def test_leaves_clean_record_args_alone(self):
        record = logging.LogRecord(
            "tasklink", logging.INFO, __file__, 1, "synced %d", (3,), None
        )
        TokenRedactionFilter().filter(record)
        assert record.args == (3,)
