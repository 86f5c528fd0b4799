from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List

from catalog import Catalog
from utils import load_json, save_json


@dataclass
class IdWithComment:
    """An identifier with a human readable label.

    In JSON this is ``[id, "comment"]``; ``[id]`` and a bare ``id`` are
    accepted on input. The comment is regenerated from the catalog on save.
    """

    id: int
    comment: str = ""

    def to_json(self) -> List[Any]:
        return [self.id, self.comment]

    @classmethod
    def from_json(cls, value: Any) -> "IdWithComment":
        if isinstance(value, bool):
            raise ValueError("unsupported JSON type for IdWithComment")
        if isinstance(value, int):
            if value < 0:
                raise ValueError("id must not be negative")
            return cls(value)
        if not isinstance(value, list):
            raise ValueError("unsupported JSON type for IdWithComment")
        if not value:
            raise ValueError("empty array not supported")
        if len(value) > 2:
            raise ValueError("array must contain an id and an optional comment")
        item_id = value[0]
        if isinstance(item_id, bool) or not isinstance(item_id, int):
            raise ValueError("first array element must be a number")
        if item_id < 0:
            raise ValueError("id must not be negative")
        comment = ""
        if len(value) == 2:
            comment = value[1]
            if not isinstance(comment, str):
                raise ValueError("second array element must be a string")
        return cls(item_id, comment)


def _parse_id_list(values: Iterable[Any] | None) -> List[IdWithComment]:
    return [IdWithComment.from_json(value) for value in values or []]


def _parse_id_map(values: Dict[str, Any] | None) -> Dict[int, List[IdWithComment]]:
    return {int(key): _parse_id_list(entries) for key, entries in (values or {}).items()}


@dataclass
class GameProfile:
    name: str
    id: int = 0
    beta_branch: str = ""
    workshop_app_id: int = 0
    make_workshop_items_lowercase: bool = False
    post_install: str = ""
    workshop_items: List[IdWithComment] = field(default_factory=list)
    workshop_collections: List[IdWithComment] = field(default_factory=list)
    workshop_dependency_add: Dict[int, List[IdWithComment]] = field(default_factory=dict)
    workshop_dependency_remove: Dict[int, List[IdWithComment]] = field(default_factory=dict)

    def added_requirements(self, item_id: int) -> List[int]:
        return [entry.id for entry in self.workshop_dependency_add.get(item_id, [])]

    def removed_requirements(self, item_id: int) -> set[int]:
        return {entry.id for entry in self.workshop_dependency_remove.get(item_id, [])}

    def top_level_ids(self) -> List[int]:
        ids = [entry.id for entry in self.workshop_items]
        ids.extend(entry.id for entry in self.workshop_collections)
        return ids

    def referenced_item_ids(self) -> List[int]:
        ids = [entry.id for entry in self.workshop_items]
        for entries in self.workshop_dependency_add.values():
            ids.extend(entry.id for entry in entries)
        for entries in self.workshop_dependency_remove.values():
            ids.extend(entry.id for entry in entries)
        return ids

    def update_comments(self, catalog: Catalog) -> None:
        groups: List[List[IdWithComment]] = [self.workshop_items]
        groups.extend(self.workshop_dependency_add.values())
        groups.extend(self.workshop_dependency_remove.values())
        for entries in groups:
            for entry in entries:
                item = catalog.workshop_items.get(entry.id)
                if item is not None:
                    entry.comment = item.title

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "beta_branch": self.beta_branch,
            "workshop_app_id": self.workshop_app_id,
            "make_workshop_items_lowercase": self.make_workshop_items_lowercase,
            "post_install": self.post_install,
            "workshop_items": [entry.to_json() for entry in self.workshop_items],
            "workshop_collections": [entry.to_json() for entry in self.workshop_collections],
            "workshop_dependency_add": {
                str(key): [entry.to_json() for entry in entries]
                for key, entries in self.workshop_dependency_add.items()
            },
            "workshop_dependency_remove": {
                str(key): [entry.to_json() for entry in entries]
                for key, entries in self.workshop_dependency_remove.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GameProfile":
        if not isinstance(data, dict):
            raise ValueError("game profile must be an object")
        name = str(data.get("name") or "")
        if not name:
            raise ValueError("game profile is missing a name")
        return cls(
            name=name,
            id=int(data.get("id") or 0),
            beta_branch=str(data.get("beta_branch") or ""),
            workshop_app_id=int(data.get("workshop_app_id") or 0),
            make_workshop_items_lowercase=bool(data.get("make_workshop_items_lowercase", False)),
            post_install=str(data.get("post_install") or ""),
            workshop_items=_parse_id_list(data.get("workshop_items")),
            workshop_collections=_parse_id_list(data.get("workshop_collections")),
            workshop_dependency_add=_parse_id_map(data.get("workshop_dependency_add")),
            workshop_dependency_remove=_parse_id_map(data.get("workshop_dependency_remove")),
        )


def update_comments(profiles: Iterable[GameProfile], catalog: Catalog) -> None:
    for profile in profiles:
        profile.update_comments(catalog)


def load_profiles(path: Path) -> List[GameProfile]:
    data = load_json(path)
    if not isinstance(data, list):
        raise ValueError(f"{path}: games config must be a list of games")
    return [GameProfile.from_dict(entry) for entry in data]


def save_profiles(path: Path, profiles: List[GameProfile], catalog: Catalog) -> None:
    update_comments(profiles, catalog)
    save_json(path, [profile.to_dict() for profile in profiles], indent="\t", sort_keys=False)
