"""Retry and proxy helpers for the Steam HTTP client."""

from __future__ import annotations

import itertools
import random
import socket
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping
from urllib.parse import urlparse

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
_DIRECT_MARKERS = {"none", "off", "direct"}
_DNS_FAILURE_TEXT = (
    "name or service not known",
    "nodename nor servname provided",
    "temporary failure in name resolution",
    "getaddrinfo failed",
)


def clean_proxy_list(values: Iterable[str] | None) -> list[str]:
    """Strip entries, drop blanks and direct-connection markers, keep first occurrences."""
    stripped = (value.strip() for value in values or [])
    return list(
        dict.fromkeys(value for value in stripped if value and value.lower() not in _DIRECT_MARKERS)
    )


class ProxyPool:
    """Round-robin over the configured proxies; ``None`` means a direct connection."""

    def __init__(self, proxies: Iterable[str] | None = None) -> None:
        self._proxies = clean_proxy_list(proxies)
        self._cycle: Iterator[str] | None = (
            itertools.cycle(self._proxies) if self._proxies else None
        )

    def next(self) -> str | None:
        if self._cycle is None:
            return None
        return next(self._cycle)

    def __len__(self) -> int:
        return len(self._proxies)


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 0
    backoff: float = 0.0
    request_delay: float = 0.0
    retry_statuses: frozenset[int] = RETRY_STATUSES

    @property
    def attempts(self) -> int:
        return max(0, self.retries) + 1

    def should_retry(self, status: int, attempt: int) -> bool:
        return attempt < self.attempts and status in self.retry_statuses

    def delay_for_attempt(self, attempt: int) -> float:
        """Exponential backoff plus up to one ``backoff`` of jitter."""
        if self.backoff <= 0:
            return 0.0
        return self.backoff * 2 ** (attempt - 1) + random.uniform(0.0, self.backoff)


def retry_after_seconds(headers: Mapping[str, str]) -> float:
    raw = headers.get("Retry-After", headers.get("retry-after", ""))
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return 0.0


def mask_proxy(proxy: str | None) -> str:
    """Render a proxy URL for logs without its password."""
    if not proxy:
        return "-"
    parsed = urlparse(proxy)
    if not parsed.scheme or not parsed.hostname:
        return proxy
    netloc = parsed.hostname
    try:
        port = parsed.port
    except ValueError:
        port = None
    if port:
        netloc = f"{netloc}:{port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    return f"{parsed.scheme}://{netloc}"


def is_dns_error(exc: BaseException) -> bool:
    if isinstance(getattr(exc, "os_error", None), socket.gaierror):
        return True
    message = str(exc).lower()
    return any(text in message for text in _DNS_FAILURE_TEXT)
