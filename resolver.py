"""Dependency-first ordering of workshop items.

Given a game profile and a list of workshop item or collection ids, produce
every workshop item needed to install them, each dependency before the item
requiring it and without duplicates.

Per profile, an item's requirements are ``requires`` minus the profile's
``workshop_dependency_remove`` entries for that item, followed by its
``workshop_dependency_add`` entries. Collections expand to their members in
collection order. Removals only apply to an item's own requirements, never to
collection members.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from catalog import Catalog, WorkshopItem
from profiles import GameProfile

ResolvedItem = Tuple[int, WorkshopItem]


class ResolutionError(LookupError):
    def __init__(self, item_id: int) -> None:
        super().__init__(f"{item_id} is neither a collection nor a workshop item")
        self.item_id = item_id


@dataclass
class _Frame:
    item_id: int | None
    item: WorkshopItem | None
    children: List[int]
    index: int = field(default=0)


def effective_requirements(profile: GameProfile, item_id: int, item: WorkshopItem) -> List[int]:
    removed = profile.removed_requirements(item_id)
    result = [required for required in item.requires if required not in removed]
    result.extend(profile.added_requirements(item_id))
    return result


def resolve(catalog: Catalog, profile: GameProfile, ids: Iterable[int]) -> List[ResolvedItem]:
    # Explicit stack: catalog depth is controlled by whoever publishes items.
    finalized: set[int] = set()
    expanding: set[int] = set()
    result: List[ResolvedItem] = []
    stack: List[_Frame] = [_Frame(None, None, list(ids))]

    while stack:
        frame = stack[-1]
        if frame.index >= len(frame.children):
            stack.pop()
            if frame.item is not None and frame.item_id is not None:
                expanding.discard(frame.item_id)
                if frame.item_id not in finalized:
                    finalized.add(frame.item_id)
                    result.append((frame.item_id, frame.item))
            continue

        child_id = frame.children[frame.index]
        frame.index += 1
        if child_id in finalized or child_id in expanding:
            continue

        item = catalog.workshop_items.get(child_id)
        if item is not None:
            expanding.add(child_id)
            stack.append(
                _Frame(child_id, item, effective_requirements(profile, child_id, item))
            )
            continue

        collection = catalog.collections.get(child_id)
        if collection is not None:
            finalized.add(child_id)
            stack.append(_Frame(child_id, None, [member.id for member in collection.items]))
            continue

        raise ResolutionError(child_id)

    return result


def resolve_profile(catalog: Catalog, profile: GameProfile) -> List[ResolvedItem]:
    """Resolve the profile's top-level workshop items and collections."""
    return resolve(catalog, profile, profile.top_level_ids())
