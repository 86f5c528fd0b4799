from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Protocol, Sequence

from catalog import Catalog, Collection, CollectionItem, CollectionItemType, WorkshopItem
from profiles import GameProfile
from steam_api import CollectionDetails, FileDetails
from steam_page import FileDetailsWeb
from telemetry import start_span
from utils import batched, utc_now

DEFAULT_BATCH_SIZE = 100


class ConsistencyError(RuntimeError):
    """The catalog lost an item between fetching it and refreshing its requirements."""


class CatalogSource(Protocol):
    async def get_collection_details(self, ids: Sequence[int]) -> List[CollectionDetails]:
        ...

    async def get_file_details(self, ids: Sequence[int]) -> List[FileDetails]:
        ...

    async def get_file_details_web(self, item_id: int) -> FileDetailsWeb:
        ...


def _ordered(ids: Iterable[int]) -> Dict[int, None]:
    return dict.fromkeys(ids)


class CatalogSyncer:
    """Bring the catalog up to date with every collection and item the games need.

    Runs until no new ids turn up:

    1. collections referenced by any game, and collections nested in those;
    2. items seeded from collections, game items, dependency overrides and the
       requirements already recorded in the catalog;
    3. item metadata in batches, then the requirements of every item that is
       new or was updated remotely since the last run, following newly
       required items.

    The catalog is changed in place; saving it is up to the caller.
    """

    def __init__(
        self,
        client: CatalogSource,
        catalog: Catalog,
        profiles: List[GameProfile],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.profiles = profiles
        self.batch_size = max(1, int(batch_size))

    async def sync(self) -> None:
        with start_span(
            "catalog.sync",
            {
                "sync.games": len(self.profiles),
                "sync.batch_size": self.batch_size,
            },
        ):
            discovered_items = await self._sync_collections()
            pending_items = self._seed_items(discovered_items)
            await self._sync_items(pending_items)
            logging.info(
                "Catalog holds %s workshop items and %s collections",
                len(self.catalog.workshop_items),
                len(self.catalog.collections),
            )

    async def _sync_collections(self) -> Dict[int, None]:
        pending = _ordered(
            entry.id for profile in self.profiles for entry in profile.workshop_collections
        )
        seen = set(pending)
        discovered_items: Dict[int, None] = {}

        while pending:
            current = list(pending)
            pending = {}
            for batch in batched(current, self.batch_size):
                logging.info("Getting info of %s collections", len(batch))
                with start_span("catalog.collections_batch", {"sync.batch": len(batch)}):
                    details = await self.client.get_collection_details(batch)
                for detail in details:
                    for child in detail.items:
                        if child.type == CollectionItemType.ITEM:
                            discovered_items[child.id] = None
                        elif child.type == CollectionItemType.COLLECTION:
                            if child.id not in seen:
                                seen.add(child.id)
                                pending[child.id] = None
                        else:
                            logging.warning(
                                "Unknown collection member type for %s in collection %s, skipping",
                                child.id,
                                detail.id,
                            )
                    self.catalog.collections[detail.id] = Collection(
                        items=[CollectionItem(child.id, child.type) for child in detail.items]
                    )
        return discovered_items

    def _seed_items(self, discovered_items: Dict[int, None]) -> Dict[int, None]:
        pending = dict(discovered_items)
        for profile in self.profiles:
            for item_id in profile.referenced_item_ids():
                pending[item_id] = None

        # Requirements already on record; no fetching happens here.
        queue = list(pending)
        index = 0
        while index < len(queue):
            item = self.catalog.workshop_items.get(queue[index])
            index += 1
            if item is None:
                continue
            for required_id in item.requires:
                if required_id not in pending:
                    pending[required_id] = None
                    queue.append(required_id)
        return pending

    async def _sync_items(self, pending: Dict[int, None]) -> None:
        fetched: set[int] = set()
        while pending:
            current = list(pending)
            pending = {}
            stale: Dict[int, None] = {}

            for batch in batched(current, self.batch_size):
                logging.info("Getting info of %s workshop items", len(batch))
                with start_span("catalog.items_batch", {"sync.batch": len(batch)}):
                    details = await self.client.get_file_details(batch)
                now = utc_now()
                for detail in details:
                    existing = self.catalog.workshop_items.get(detail.id)
                    item = WorkshopItem(
                        creator_app_id=detail.creator_app_id,
                        time_created=detail.time_created,
                        time_updated=detail.time_updated,
                        last_refreshed=now,
                        title=detail.title,
                    )
                    if existing is not None:
                        item.last_downloaded = existing.last_downloaded
                        item.requires = existing.requires
                    if existing is None or existing.time_updated < detail.time_updated:
                        stale[detail.id] = None
                    self.catalog.workshop_items[detail.id] = item
                    fetched.add(detail.id)

            for item_id in stale:
                logging.info("Getting dependencies of workshop item %s", item_id)
                with start_span("catalog.item_requirements", {"steam.item_id": str(item_id)}):
                    page = await self.client.get_file_details_web(item_id)
                item = self.catalog.workshop_items.get(item_id)
                if item is None:
                    raise ConsistencyError(
                        f"workshop item {item_id} not in catalog on requirement update"
                    )
                item.requires = [
                    required.id for required in page.required_items if required.id != item_id
                ]
                for required_id in item.requires:
                    if required_id not in fetched:
                        pending[required_id] = None


async def sync_catalog(
    client: CatalogSource,
    catalog: Catalog,
    profiles: List[GameProfile],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> None:
    await CatalogSyncer(client, catalog, profiles, batch_size=batch_size).sync()
