from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, List

from utils import format_time, load_json, parse_time, save_json

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class CollectionItemType(IntEnum):
    """Kind of a collection member, as reported by the collection details API."""

    ITEM = 0
    UNKNOWN = 1
    COLLECTION = 2

    @classmethod
    def from_remote(cls, value: Any) -> "CollectionItemType":
        try:
            number = int(value)
        except (TypeError, ValueError):
            return cls.UNKNOWN
        if number == cls.ITEM:
            return cls.ITEM
        if number == cls.COLLECTION:
            return cls.COLLECTION
        return cls.UNKNOWN


@dataclass
class WorkshopItem:
    creator_app_id: int = 0
    time_created: datetime = EPOCH
    time_updated: datetime = EPOCH
    last_refreshed: datetime = EPOCH
    last_downloaded: datetime | None = None
    title: str = ""
    requires: List[int] = field(default_factory=list)

    def content_suffix(self, item_id: int) -> str:
        return f"{self.creator_app_id}/{item_id}"

    def needs_download(self) -> bool:
        if self.last_downloaded is None:
            return True
        return not self.last_downloaded > self.time_updated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "creator_app_id": self.creator_app_id,
            "time_created": format_time(self.time_created),
            "time_updated": format_time(self.time_updated),
            "last_refreshed": format_time(self.last_refreshed),
            "last_downloaded": format_time(self.last_downloaded),
            "title": self.title,
            "requires": list(self.requires),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkshopItem":
        return cls(
            creator_app_id=int(data.get("creator_app_id") or 0),
            time_created=parse_time(data.get("time_created")) or EPOCH,
            time_updated=parse_time(data.get("time_updated")) or EPOCH,
            last_refreshed=parse_time(data.get("last_refreshed")) or EPOCH,
            last_downloaded=parse_time(data.get("last_downloaded")),
            title=str(data.get("title") or ""),
            requires=[int(value) for value in data.get("requires") or []],
        )


@dataclass(frozen=True)
class CollectionItem:
    id: int
    type: CollectionItemType


@dataclass
class Collection:
    items: List[CollectionItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"items": [{"id": item.id, "type": int(item.type)} for item in self.items]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Collection":
        return cls(
            items=[
                CollectionItem(int(entry["id"]), CollectionItemType.from_remote(entry.get("type")))
                for entry in data.get("items") or []
            ]
        )


@dataclass
class Catalog:
    """Local record of every workshop item and collection seen so far."""

    workshop_items: Dict[int, WorkshopItem] = field(default_factory=dict)
    collections: Dict[int, Collection] = field(default_factory=dict)
    path_changes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workshop_items": {
                str(item_id): item.to_dict() for item_id, item in self.workshop_items.items()
            },
            "collections": {
                str(collection_id): collection.to_dict()
                for collection_id, collection in self.collections.items()
            },
            "path_changes": list(self.path_changes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Catalog":
        if not isinstance(data, dict):
            raise ValueError("Invalid catalog format")
        return cls(
            workshop_items={
                int(key): WorkshopItem.from_dict(value)
                for key, value in (data.get("workshop_items") or {}).items()
            },
            collections={
                int(key): Collection.from_dict(value)
                for key, value in (data.get("collections") or {}).items()
            },
            path_changes=[str(path) for path in data.get("path_changes") or []],
        )

    def find_by_title(self, title: str) -> int | None:
        for item_id, item in self.workshop_items.items():
            if item.title == title:
                return item_id
        return None


def load_catalog(path: Path) -> Catalog:
    if not path.exists():
        logging.info("Catalog %s does not exist yet, starting empty", path)
        return Catalog()
    return Catalog.from_dict(load_json(path))


def save_catalog(path: Path, catalog: Catalog) -> None:
    save_json(path, catalog.to_dict())
