"""
Unit tests for finding identity hashing.
"""

import pytest

from ember.config.settings import DeduplicationStrategy
from ember.memory.deduplicator import (
    generate_identity_hash,
    identity_fields,
    normalize_path,
    source_file,
)

BASE = {
    "hostname": "app.example.com",
    "vuln_type": "injection",
    "source": "app/routes/users.py:42",
    "path": "/api/users/17?sort=name",
    "sink_call": "cursor.execute",
    "confidence": 85,
}


def variant(**changes):
    data = dict(BASE)
    data.update(changes)
    return data


class TestNormalization:
    """Test path and source normalisation."""

    def test_strict_keeps_path(self):
        """Strict only trims a trailing slash."""
        assert normalize_path("/api/users/17/", DeduplicationStrategy.STRICT) == "/api/users/17"
        assert normalize_path("/", DeduplicationStrategy.STRICT) == "/"

    def test_moderate_strips_query_and_ids(self):
        """Moderate drops query strings, fragments and id segments."""
        assert normalize_path("/API/Users/17?sort=name#top", DeduplicationStrategy.MODERATE) == "/api/users/:id"
        assert (
            normalize_path("/orders/550e8400-e29b-41d4-a716-446655440000/items", DeduplicationStrategy.MODERATE)
            == "/orders/:id/items"
        )

    def test_source_file_strips_line_numbers(self):
        """Line and column suffixes are removed."""
        assert source_file("app/views.py:42") == "app/views.py"
        assert source_file("app/views.py:42:7") == "app/views.py"
        assert source_file("app/views.py") == "app/views.py"


class TestIdentityHash:
    """Test which differences split or merge findings."""

    def test_hash_is_stable_sha256(self):
        """Same input, same 64-char hex digest."""
        first = generate_identity_hash(BASE)
        assert first == generate_identity_hash(dict(BASE))
        assert len(first) == 64

    def test_extra_keys_ignored(self):
        """Exploitation data does not take part in identity."""
        assert generate_identity_hash(BASE) == generate_identity_hash(
            variant(exploitation_data={"impact": "full DB read"}, session_id="s-2")
        )

    def test_strict_separates_sinks(self):
        """Strict treats a different sink as a different finding."""
        assert generate_identity_hash(BASE, "strict") != generate_identity_hash(variant(sink_call="raw"), "strict")

    def test_strict_ignores_confidence(self):
        """A re-scan reporting a different confidence is the same strict finding."""
        assert generate_identity_hash(variant(confidence=79), "strict") == generate_identity_hash(
            variant(confidence=81), "strict"
        )
        assert "confidence_bucket" not in identity_fields(BASE, "strict")

    def test_moderate_confidence_buckets(self):
        """Moderate merges confidence within the same bucket of 25."""
        assert generate_identity_hash(variant(confidence=76), "moderate") == generate_identity_hash(
            variant(confidence=99), "moderate"
        )
        assert generate_identity_hash(variant(confidence=74), "moderate") != generate_identity_hash(
            variant(confidence=76), "moderate"
        )

    def test_moderate_merges_id_variants(self):
        """Moderate merges paths differing only in ids and query."""
        first = generate_identity_hash(variant(path="/api/users/17?sort=name"), "moderate")
        second = generate_identity_hash(variant(path="/api/users/99", sink_call="raw"), "moderate")
        assert first == second

    def test_loose_merges_same_source_file(self):
        """Loose keeps only host, type and source file."""
        first = generate_identity_hash(variant(path="/a", source="app/db.py:10", confidence=10), "loose")
        second = generate_identity_hash(variant(path="/b", source="app/db.py:99", confidence=95), "loose")
        assert first == second

    def test_hostname_case_insensitive(self):
        """Hostnames compare case-insensitively."""
        assert generate_identity_hash(variant(hostname="APP.example.com")) == generate_identity_hash(BASE)

    def test_different_types_never_merge(self):
        """Vulnerability type always takes part in identity."""
        for strategy in DeduplicationStrategy:
            assert generate_identity_hash(BASE, strategy) != generate_identity_hash(variant(vuln_type="xss"), strategy)

    def test_unknown_strategy_rejected(self):
        """Only the three strategies are accepted."""
        with pytest.raises(ValueError):
            generate_identity_hash(BASE, "fuzzy")

    def test_missing_confidence_defaults(self):
        """Absent or junk confidence falls back to the default."""
        fields = identity_fields(variant(confidence="n/a"), "moderate")
        assert fields["confidence_bucket"] == 2
