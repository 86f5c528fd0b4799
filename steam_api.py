from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Sequence, Tuple
from urllib.parse import urlparse

import aiohttp

from catalog import CollectionItemType
from http_utils import ProxyPool, RetryPolicy, is_dns_error, mask_proxy, retry_after_seconds
from steam_page import FileDetailsWeb, extract_file_details
from telemetry import start_span
from utils import from_unix

FILE_DETAILS_URL = "https://api.steampowered.com/ISteamRemoteStorage/GetPublishedFileDetails/v1/"
COLLECTION_DETAILS_URL = "https://api.steampowered.com/ISteamRemoteStorage/GetCollectionDetails/v1/"
FILE_DETAILS_PAGE_URL = "https://steamcommunity.com/sharedfiles/filedetails/"


class FetchError(RuntimeError):
    """A remote catalog lookup failed or returned something unusable."""


@dataclass(frozen=True)
class FileDetails:
    id: int
    creator_app_id: int
    time_created: datetime
    time_updated: datetime
    title: str


@dataclass(frozen=True)
class CollectionChild:
    id: int
    sort_order: int
    type: CollectionItemType


@dataclass
class CollectionDetails:
    id: int
    items: List[CollectionChild] = field(default_factory=list)


@dataclass
class SteamStats:
    total: int = 0
    success: int = 0
    failed: int = 0
    by_endpoint: Dict[str, int] = field(default_factory=dict)

    def record(self, endpoint: str, ok: bool) -> None:
        self.total += 1
        if ok:
            self.success += 1
        else:
            self.failed += 1
        self.by_endpoint[endpoint] = self.by_endpoint.get(endpoint, 0) + 1

    def snapshot(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "by_endpoint": dict(self.by_endpoint),
        }


def _published_file_form(count_key: str, ids: Sequence[int]) -> Dict[str, str]:
    data = {count_key: str(len(ids))}
    for index, item_id in enumerate(ids):
        data[f"publishedfileids[{index}]"] = str(item_id)
    return data


def _decode_response(body: str, endpoint: str) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise FetchError(f"{endpoint}: invalid JSON response: {exc}") from exc
    response = payload.get("response") if isinstance(payload, dict) else None
    if not isinstance(response, dict):
        raise FetchError(f"{endpoint}: response object missing")
    return response


def _int_field(detail: Dict[str, Any], key: str, endpoint: str) -> int:
    try:
        return int(detail.get(key) or 0)
    except (TypeError, ValueError) as exc:
        raise FetchError(f"{endpoint}: invalid {key} {detail.get(key)!r}") from exc


def _index_of(ids: Sequence[int], raw_id: Any, endpoint: str) -> int:
    try:
        item_id = int(raw_id)
    except (TypeError, ValueError) as exc:
        raise FetchError(f"{endpoint}: invalid id {raw_id!r} returned") from exc
    try:
        return list(ids).index(item_id)
    except ValueError as exc:
        raise FetchError(f"{endpoint}: unexpected id {item_id} returned") from exc


def _detail_entries(
    response: Dict[str, Any], key: str, ids: Sequence[int], endpoint: str
) -> List[Dict[str, Any]]:
    details = response.get(key) or []
    if not isinstance(details, list):
        raise FetchError(f"{endpoint}: {key} is not a list")
    if len(details) != len(ids):
        raise FetchError(f"{endpoint}: expected {len(ids)} results, got {len(details)}")
    for detail in details:
        if not isinstance(detail, dict):
            raise FetchError(f"{endpoint}: result entry is not an object: {detail!r}")
    return details


def _parse_child(child: Any) -> CollectionChild:
    try:
        return CollectionChild(
            id=int(child["publishedfileid"]),
            sort_order=int(child.get("sortorder") or 0),
            type=CollectionItemType.from_remote(child.get("filetype")),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise FetchError(f"collection details: malformed child {child!r}") from exc


def parse_file_details(body: str, ids: Sequence[int]) -> List[FileDetails]:
    """Parse a GetPublishedFileDetails response into input order."""
    response = _decode_response(body, "file details")
    details = _detail_entries(response, "publishedfiledetails", ids, "file details")
    result: List[FileDetails | None] = [None] * len(ids)
    for detail in details:
        index = _index_of(ids, detail.get("publishedfileid"), "file details")
        if detail.get("result", 1) != 1:
            logging.warning(
                "Workshop item %s lookup returned result=%s",
                ids[index],
                detail.get("result"),
            )
        result[index] = FileDetails(
            id=ids[index],
            creator_app_id=_int_field(detail, "creator_app_id", "file details"),
            time_created=from_unix(detail.get("time_created")),
            time_updated=from_unix(detail.get("time_updated")),
            title=str(detail.get("title") or ""),
        )
    if any(entry is None for entry in result):
        raise FetchError("file details: duplicate ids returned")
    return [entry for entry in result if entry is not None]


def parse_collection_details(body: str, ids: Sequence[int]) -> List[CollectionDetails]:
    """Parse a GetCollectionDetails response into input order.

    Children are sorted by the ``sortorder`` the collection declares.
    """
    response = _decode_response(body, "collection details")
    details = _detail_entries(response, "collectiondetails", ids, "collection details")
    result: List[CollectionDetails | None] = [None] * len(ids)
    for detail in details:
        index = _index_of(ids, detail.get("publishedfileid"), "collection details")
        raw_children = detail.get("children") or []
        if not isinstance(raw_children, list):
            raise FetchError(f"collection details: children of {ids[index]} is not a list")
        children = [_parse_child(child) for child in raw_children]
        children.sort(key=lambda child: child.sort_order)
        result[index] = CollectionDetails(id=ids[index], items=children)
    if any(entry is None for entry in result):
        raise FetchError("collection details: duplicate ids returned")
    return [entry for entry in result if entry is not None]


class SteamClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        policy: RetryPolicy | None = None,
        proxies: List[str] | None = None,
        log_requests: bool = False,
        language: str = "",
    ) -> None:
        self.session = session
        self.policy = policy or RetryPolicy(retries=2, backoff=1.0)
        self.proxy_pool = ProxyPool(proxies)
        self.log_requests = bool(log_requests)
        self.language = language
        self.stats = SteamStats()
        self._last_request_ts = 0.0

    async def request(self, method: str, url: str, **kwargs: Any) -> Tuple[int, str]:
        endpoint = self._endpoint_key(method, url)
        attempts = self.policy.attempts
        for attempt in range(1, attempts + 1):
            proxy = self.proxy_pool.next()
            await self._respect_request_delay()
            start = time.monotonic()
            try:
                async with self.session.request(method, url, proxy=proxy, **kwargs) as response:
                    body = await response.text()
                    status = response.status
                    headers = response.headers
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self.stats.record(endpoint, False)
                if proxy and is_dns_error(exc):
                    logging.warning(
                        "Steam proxy DNS error for url=%s via %s: %s",
                        url,
                        mask_proxy(proxy),
                        exc,
                    )
                if attempt >= attempts:
                    raise FetchError(f"{endpoint} failed: {exc or type(exc).__name__}") from exc
                await self._sleep_backoff(attempt, exc, url)
                continue
            finally:
                self._last_request_ts = time.monotonic()

            ok = status < 400
            self.stats.record(endpoint, ok)
            if self.log_requests:
                log_fn = logging.info if ok else logging.warning
                log_fn(
                    "Steam %s -> %s in %.2fs (size=%s, proxy=%s)",
                    endpoint,
                    status,
                    time.monotonic() - start,
                    len(body),
                    mask_proxy(proxy),
                )
            if self.policy.should_retry(status, attempt):
                wait_for = retry_after_seconds(headers)
                if wait_for > 0:
                    await asyncio.sleep(wait_for)
                await self._sleep_backoff(attempt, RuntimeError(f"HTTP {status}"), url)
                continue
            if not ok:
                raise FetchError(f"{endpoint} returned HTTP {status}")
            return status, body
        raise FetchError(f"{endpoint} failed after {attempts} attempts")

    async def get_file_details(self, ids: Sequence[int]) -> List[FileDetails]:
        with start_span("steam.file_details", {"steam.items": len(ids)}):
            _, body = await self.request(
                "post",
                FILE_DETAILS_URL,
                data=_published_file_form("itemcount", ids),
                headers={"Accept": "application/json"},
            )
            return parse_file_details(body, ids)

    async def get_collection_details(self, ids: Sequence[int]) -> List[CollectionDetails]:
        with start_span("steam.collection_details", {"steam.collections": len(ids)}):
            _, body = await self.request(
                "post",
                COLLECTION_DETAILS_URL,
                data=_published_file_form("collectioncount", ids),
                headers={"Accept": "application/json"},
            )
            return parse_collection_details(body, ids)

    async def get_file_details_web(self, item_id: int) -> FileDetailsWeb:
        params = {"id": str(item_id)}
        if self.language:
            params["l"] = self.language
        with start_span("steam.file_details_page", {"steam.item_id": str(item_id)}):
            _, body = await self.request(
                "get",
                FILE_DETAILS_PAGE_URL,
                params=params,
                headers={"User-Agent": "Mozilla/5.0"},
            )
            details = extract_file_details(body)
        details.required_items = [
            required for required in details.required_items if required.id != item_id
        ]
        return details

    async def _respect_request_delay(self) -> None:
        if self.policy.request_delay <= 0:
            return
        wait_for = self.policy.request_delay - (time.monotonic() - self._last_request_ts)
        if wait_for > 0:
            await asyncio.sleep(wait_for)

    async def _sleep_backoff(self, attempt: int, exc: BaseException, url: str) -> None:
        delay = self.policy.delay_for_attempt(attempt)
        if delay <= 0:
            return
        logging.warning(
            "Steam retry %s/%s after error: %s (sleep %.1fs) url=%s",
            attempt,
            self.policy.retries,
            exc,
            delay,
            url,
        )
        await asyncio.sleep(delay)

    @staticmethod
    def _endpoint_key(method: str, url: str) -> str:
        parsed = urlparse(url)
        return f"{method.upper()} {parsed.netloc}{parsed.path}"


@asynccontextmanager
async def open_steam_client(
    timeout: int,
    *,
    policy: RetryPolicy | None = None,
    proxies: List[str] | None = None,
    log_requests: bool = False,
    language: str = "",
) -> AsyncIterator[SteamClient]:
    timeout_cfg = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=timeout_cfg) as session:
        client = SteamClient(
            session,
            policy=policy,
            proxies=proxies,
            log_requests=log_requests,
            language=language,
        )
        try:
            yield client
        finally:
            stats = client.stats.snapshot()
            if stats["total"]:
                logging.info(
                    "Steam requests: total=%s ok=%s failed=%s endpoints=%s",
                    stats["total"],
                    stats["success"],
                    stats["failed"],
                    stats["by_endpoint"],
                )
