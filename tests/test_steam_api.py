import asyncio
import json
from datetime import datetime, timezone

import aiohttp
import pytest

from catalog import CollectionItemType
from http_utils import RetryPolicy
from steam_api import (
    FILE_DETAILS_URL,
    FetchError,
    SteamClient,
    parse_collection_details,
    parse_file_details,
)
from steam_page import RequiredItem


def _body(**response):
    return json.dumps({"response": response})


def test_file_details_follow_input_order():
    body = _body(
        result=1,
        resultcount=2,
        publishedfiledetails=[
            {
                "publishedfileid": "2950011244",
                "result": 1,
                "creator_app_id": 107410,
                "time_created": 1680000000,
                "time_updated": 1700000000,
                "title": "Sail to South-Eastern Asia",
            },
            {
                "publishedfileid": "463939057",
                "result": 1,
                "creator_app_id": 107410,
                "time_created": 1430000000,
                "time_updated": 1758384867,
                "title": "ace",
            },
        ],
    )

    details = parse_file_details(body, [463939057, 2950011244])

    assert [detail.id for detail in details] == [463939057, 2950011244]
    assert details[0].title == "ace"
    assert details[0].creator_app_id == 107410
    assert details[0].time_updated == datetime.fromtimestamp(1758384867, tz=timezone.utc)


def test_file_details_count_mismatch():
    body = _body(publishedfiledetails=[{"publishedfileid": "1", "title": "one"}])

    with pytest.raises(FetchError):
        parse_file_details(body, [1, 2])


def test_file_details_unexpected_id():
    body = _body(publishedfiledetails=[{"publishedfileid": "3", "title": "three"}])

    with pytest.raises(FetchError):
        parse_file_details(body, [1])


def test_file_details_duplicate_id():
    body = _body(
        publishedfiledetails=[
            {"publishedfileid": "1", "title": "one"},
            {"publishedfileid": "1", "title": "one again"},
        ]
    )

    with pytest.raises(FetchError):
        parse_file_details(body, [1, 2])


@pytest.mark.parametrize("body", ["not json", "[]", json.dumps({"nope": {}})])
def test_invalid_body(body):
    with pytest.raises(FetchError):
        parse_file_details(body, [1])


def test_collection_children_sorted_by_sort_order():
    body = _body(
        collectiondetails=[
            {
                "publishedfileid": "12",
                "result": 1,
                "children": [
                    {"publishedfileid": "90", "sortorder": 3, "filetype": 0},
                    {"publishedfileid": "71", "sortorder": 1, "filetype": 2},
                    {"publishedfileid": "5", "sortorder": 0, "filetype": 0},
                    {"publishedfileid": "99", "sortorder": 2, "filetype": 9},
                ],
            },
            {"publishedfileid": "72", "result": 1},
        ]
    )

    details = parse_collection_details(body, [72, 12])

    assert [detail.id for detail in details] == [72, 12]
    assert details[0].items == []
    assert [(child.id, child.type) for child in details[1].items] == [
        (5, CollectionItemType.ITEM),
        (71, CollectionItemType.COLLECTION),
        (99, CollectionItemType.UNKNOWN),
        (90, CollectionItemType.ITEM),
    ]


def test_collection_count_mismatch():
    body = _body(collectiondetails=[])

    with pytest.raises(FetchError):
        parse_collection_details(body, [12])


def test_malformed_child_raises_fetch_error():
    body = _body(collectiondetails=[{"publishedfileid": "12", "children": [{"sortorder": 1}]}])

    with pytest.raises(FetchError):
        parse_collection_details(body, [12])


@pytest.mark.parametrize("entry", ["12", None, [12]])
def test_non_object_entry_raises_fetch_error(entry):
    with pytest.raises(FetchError):
        parse_collection_details(_body(collectiondetails=[entry]), [12])
    with pytest.raises(FetchError):
        parse_file_details(_body(publishedfiledetails=[entry]), [12])


class FakeResponse:
    def __init__(self, status, body="", headers=None):
        self.status = status
        self.headers = headers or {}
        self._body = body

    async def text(self):
        return self._body


class FakeRequest:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Replays scripted responses or exceptions, one per request."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return FakeRequest(self.outcomes.pop(0))


def _client(session, retries=1):
    return SteamClient(session, policy=RetryPolicy(retries=retries, backoff=0))


def test_request_retries_transient_status():
    session = FakeSession(FakeResponse(503), FakeResponse(200, "ok"))

    status, body = asyncio.run(_client(session).request("get", FILE_DETAILS_URL))

    assert (status, body) == (200, "ok")
    assert len(session.calls) == 2
    assert session.calls[0][2]["proxy"] is None


def test_request_honours_retry_after(monkeypatch):
    slept = []

    async def fake_sleep(delay):
        slept.append(delay)

    monkeypatch.setattr("steam_api.asyncio.sleep", fake_sleep)
    session = FakeSession(FakeResponse(429, headers={"Retry-After": "7"}), FakeResponse(200, "ok"))

    asyncio.run(_client(session).request("get", FILE_DETAILS_URL))

    assert slept == [7.0]


def test_request_gives_up_after_last_retry():
    session = FakeSession(FakeResponse(500), FakeResponse(502))
    client = _client(session)

    with pytest.raises(FetchError):
        asyncio.run(client.request("get", FILE_DETAILS_URL))
    assert len(session.calls) == 2
    assert client.stats.failed == 2


def test_request_client_error_status_is_not_retried():
    session = FakeSession(FakeResponse(404, "missing"))

    with pytest.raises(FetchError, match="HTTP 404"):
        asyncio.run(_client(session, retries=3).request("get", FILE_DETAILS_URL))
    assert len(session.calls) == 1


def test_request_connection_errors_become_fetch_error():
    session = FakeSession(
        aiohttp.ClientConnectionError("refused"),
        aiohttp.ClientConnectionError("refused"),
    )

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(_client(session).request("get", FILE_DETAILS_URL))
    assert isinstance(excinfo.value.__cause__, aiohttp.ClientConnectionError)
    assert len(session.calls) == 2


def test_request_recovers_from_connection_error():
    session = FakeSession(aiohttp.ClientConnectionError("reset"), FakeResponse(200, "ok"))

    assert asyncio.run(_client(session).request("get", FILE_DETAILS_URL)) == (200, "ok")


def test_get_file_details_posts_form():
    body = _body(
        publishedfiledetails=[
            {"publishedfileid": "463939057", "creator_app_id": 107410, "title": "ace"},
        ]
    )
    session = FakeSession(FakeResponse(200, body))

    (details,) = asyncio.run(_client(session).get_file_details([463939057]))

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("post", FILE_DETAILS_URL)
    assert kwargs["data"] == {"itemcount": "1", "publishedfileids[0]": "463939057"}
    assert (details.id, details.title, details.creator_app_id) == (463939057, "ace", 107410)


def test_file_details_page_drops_the_item_itself():
    page = """
    <div class="workshopItemTitle">Sail to South-Eastern Asia</div>
    <div id="RequiredItems">
      <a href="https://steamcommunity.com/workshop/filedetails/?id=2950011244">
        <div class="requiredItem">Sail to South-Eastern Asia</div>
      </a>
      <a href="https://steamcommunity.com/workshop/filedetails/?id=450814997">
        <div class="requiredItem">CBA_A3</div>
      </a>
    </div>
    """
    session = FakeSession(FakeResponse(200, page))
    client = SteamClient(session, policy=RetryPolicy(retries=0, backoff=0), language="english")

    details = asyncio.run(client.get_file_details_web(2950011244))

    assert details.title == "Sail to South-Eastern Asia"
    assert details.required_items == [RequiredItem(450814997, "CBA_A3")]
    assert session.calls[0][2]["params"] == {"id": "2950011244", "l": "english"}
