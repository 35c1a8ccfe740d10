"""Tests for the canonical variable-set fingerprint."""

from __future__ import annotations

import hashlib

from envkit.sync.hasher import EMPTY_FINGERPRINT, canonicalize, fingerprint


class TestCanonicalize:
    def test_sorted_lines(self):
        assert canonicalize({"B": "2", "A": "1"}) == "A=1\nB=2"

    def test_byte_order_not_locale(self):
        # Uppercase sorts before lowercase by UTF-8 bytes.
        assert canonicalize({"a": "x", "B": "y"}) == "B=y\na=x"

    def test_empty(self):
        assert canonicalize({}) == ""


class TestFingerprint:
    def test_empty_set_is_empty_string(self):
        assert fingerprint({}) == EMPTY_FINGERPRINT == ""

    def test_known_digest(self):
        expected = hashlib.sha256(b"A=1\nB=2").hexdigest()
        assert fingerprint({"A": "1", "B": "2"}) == expected

    def test_insertion_order_does_not_matter(self):
        assert fingerprint({"A": "1", "B": "2"}) == fingerprint({"B": "2", "A": "1"})

    def test_value_change_changes_hash(self):
        assert fingerprint({"A": "1"}) != fingerprint({"A": "2"})

    def test_empty_value_differs_from_missing(self):
        assert fingerprint({"A": ""}) != fingerprint({})

    def test_lowercase_hex(self):
        digest = fingerprint({"A": "1"})
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_unescaped_newline_collides(self):
        """Values are not escaped, so an embedded newline can mimic another key."""
        assert fingerprint({"A": "1\nB=2"}) == fingerprint({"A": "1", "B": "2"})
