"""Secrets scrubbing for captured URLs and query strings."""

from __future__ import annotations

__all__ = ["MATCHER_MODES", "REDACTED", "SecretsMatcher"]

import re
from collections.abc import Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

logger = structlog.get_logger(__name__)

REDACTED = "<redacted>"

MATCHER_MODES = (
    "equals-ignore-case",
    "equals",
    "contains-ignore-case",
    "contains",
    "regex",
    "none",
)

_DEFAULT_MODE = "contains-ignore-case"
_DEFAULT_KEYWORDS = ("key", "pass", "secret")


class SecretsMatcher:
    """Decides whether a key (query parameter, header) holds a secret.

    Args:
        mode: One of :data:`MATCHER_MODES`. Unknown modes fall back to
            ``contains-ignore-case``.
        keywords: Keywords (or regular expressions in ``regex`` mode).
    """

    def __init__(self, mode: str = _DEFAULT_MODE, keywords: list[str] | None = None) -> None:
        self._matches: Callable[[str], bool] = lambda _key: False
        self.mode = _DEFAULT_MODE
        self.keywords: list[str] = []
        self.set_matcher(mode, list(_DEFAULT_KEYWORDS) if keywords is None else keywords)

    def set_matcher(self, mode: str, keywords: list[str]) -> None:
        """Replace the matching rule, e.g. from an agent announce response."""
        if mode not in MATCHER_MODES:
            logger.warning("secrets_matcher_unknown_mode", mode=mode, fallback=_DEFAULT_MODE)
            mode = _DEFAULT_MODE
        self.mode = mode
        self.keywords = [k for k in keywords if isinstance(k, str)]
        self._matches = self._build(mode, self.keywords)

    @staticmethod
    def _build(mode: str, keywords: list[str]) -> Callable[[str], bool]:
        if mode == "none" or not keywords:
            return lambda _key: False
        if mode == "equals":
            exact = set(keywords)
            return lambda key: key in exact
        if mode == "equals-ignore-case":
            lowered = {k.lower() for k in keywords}
            return lambda key: key.lower() in lowered
        if mode == "contains":
            return lambda key: any(k in key for k in keywords)
        if mode == "regex":
            patterns = []
            for keyword in keywords:
                try:
                    patterns.append(re.compile(keyword))
                except re.error:
                    logger.warning("secrets_matcher_invalid_regex", pattern=keyword)
            return lambda key: any(p.fullmatch(key) for p in patterns)
        lowered_list = [k.lower() for k in keywords]
        return lambda key: any(k in key.lower() for k in lowered_list)

    def is_secret(self, key: str) -> bool:
        return self._matches(key)

    def redact_query(self, url_or_query: str) -> str:
        """Replace the values of secret query parameters with ``<redacted>``.

        Accepts a full URL or a bare query string.
        """
        if not url_or_query:
            return url_or_query
        has_scheme = "://" in url_or_query or url_or_query.startswith("/")
        if has_scheme or "?" in url_or_query:
            parts = urlsplit(url_or_query)
            if not parts.query:
                return url_or_query
            return urlunsplit(parts._replace(query=self._redact_pairs(parts.query)))
        return self._redact_pairs(url_or_query)

    def _redact_pairs(self, query: str) -> str:
        pairs = parse_qsl(query, keep_blank_values=True)
        redacted = [(k, REDACTED if self.is_secret(k) else v) for k, v in pairs]
        return urlencode(redacted, safe="<>")
