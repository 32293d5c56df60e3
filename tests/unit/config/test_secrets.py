"""Tests for the secrets matcher."""

from __future__ import annotations

import pytest

from vigil.config.secrets import REDACTED, SecretsMatcher


class TestSecretsMatcher:
    """Tests for SecretsMatcher modes."""

    def test_default_contains_ignore_case(self) -> None:
        matcher = SecretsMatcher()
        assert matcher.mode == "contains-ignore-case"
        assert matcher.is_secret("API_KEY")
        assert matcher.is_secret("password")
        assert not matcher.is_secret("user")

    @pytest.mark.parametrize(
        ("mode", "key", "expected"),
        [
            ("equals", "token", True),
            ("equals", "Token", False),
            ("equals-ignore-case", "TOKEN", True),
            ("equals-ignore-case", "tokens", False),
            ("contains", "my_token_1", True),
            ("contains", "MY_TOKEN", False),
            ("regex", "token", True),
            ("regex", "tokenx", False),
            ("none", "token", False),
        ],
    )
    def test_modes(self, mode: str, key: str, expected: bool) -> None:
        matcher = SecretsMatcher(mode, ["token"])
        assert matcher.is_secret(key) is expected

    def test_unknown_mode_falls_back(self) -> None:
        matcher = SecretsMatcher("fuzzy", ["pass"])
        assert matcher.mode == "contains-ignore-case"
        assert matcher.is_secret("PASSWORD")

    def test_invalid_regex_is_skipped(self) -> None:
        matcher = SecretsMatcher("regex", ["(", "sec.*"])
        assert matcher.is_secret("secret")
        assert not matcher.is_secret("(")

    def test_set_matcher_replaces_rule(self) -> None:
        matcher = SecretsMatcher()
        matcher.set_matcher("equals", ["session"])
        assert matcher.is_secret("session")
        assert not matcher.is_secret("password")


class TestRedactQuery:
    """Tests for query string redaction."""

    def test_full_url(self) -> None:
        matcher = SecretsMatcher()
        redacted = matcher.redact_query("http://example.com/login?user=bob&password=hunter2")
        assert redacted == f"http://example.com/login?user=bob&password={REDACTED}"

    def test_path_with_query(self) -> None:
        matcher = SecretsMatcher()
        assert matcher.redact_query("/api?api_key=abc") == f"/api?api_key={REDACTED}"

    def test_bare_query(self) -> None:
        matcher = SecretsMatcher()
        assert matcher.redact_query("secret=1&page=2") == f"secret={REDACTED}&page=2"

    def test_url_without_query_unchanged(self) -> None:
        matcher = SecretsMatcher()
        assert matcher.redact_query("http://example.com/path") == "http://example.com/path"
        assert matcher.redact_query("") == ""
