import pytest

from catalog import Catalog, Collection, CollectionItem, CollectionItemType, WorkshopItem
from profiles import GameProfile, IdWithComment
from resolver import ResolutionError, resolve, resolve_profile


def _items(requires):
    return {item_id: WorkshopItem(requires=list(deps)) for item_id, deps in requires.items()}


def _ids(values):
    return [IdWithComment(value) for value in values]


def _collection(*members):
    return Collection(items=[CollectionItem(item_id, kind) for item_id, kind in members])


ITEM = CollectionItemType.ITEM
COLLECTION = CollectionItemType.COLLECTION


def _profile(items, add=None, remove=None, collections=()):
    return GameProfile(
        name="Arma3",
        workshop_items=_ids(items),
        workshop_collections=_ids(collections),
        workshop_dependency_add={key: _ids(values) for key, values in (add or {}).items()},
        workshop_dependency_remove={key: _ids(values) for key, values in (remove or {}).items()},
    )


def _resolved_ids(result):
    return [item_id for item_id, _ in result]


def test_items_only_with_overrides():
    catalog = Catalog(
        workshop_items=_items(
            {
                1: [3],
                3: [4],
                4: [5],
                5: [50],
                10: [11, 13, 50, 14],
                11: [12],
                12: [],
                13: [12],
                14: [],
                50: [],
                100: [110, 160],
                110: [111, 112],
                111: [],
                112: [],
                140: [],
                160: [],
                180: [],
            }
        )
    )
    profile = _profile(
        [1, 10, 100],
        add={100: [140], 110: [112], 160: [180]},
        remove={100: [110]},
    )

    result = resolve_profile(catalog, profile)

    assert _resolved_ids(result) == [50, 5, 4, 3, 1, 12, 11, 13, 14, 10, 180, 160, 140, 100]


def test_items_without_overrides():
    catalog = Catalog(
        workshop_items=_items(
            {
                1: [3],
                3: [4],
                4: [5],
                5: [50],
                10: [11, 13, 50, 14],
                11: [12],
                12: [],
                13: [12],
                14: [],
                50: [],
            }
        )
    )

    result = resolve(catalog, _profile([]), [1, 10])

    assert _resolved_ids(result) == [50, 5, 4, 3, 1, 12, 11, 13, 14, 10]


def test_nested_collections_expand_once():
    catalog = Catalog(
        workshop_items=_items(
            {
                1: [3],
                3: [4],
                4: [5],
                5: [50],
                10: [11, 13, 50, 14],
                11: [12],
                13: [12],
                14: [],
                50: [],
                81: [],
                90: [91, 92],
                91: [],
                92: [],
                93: [],
                100: [110, 160],
                110: [111, 112],
                111: [],
                112: [],
                140: [],
                160: [],
                180: [],
            }
        ),
        collections={
            12: _collection((5, ITEM), (71, COLLECTION), (72, COLLECTION), (90, ITEM)),
            71: _collection((80, COLLECTION)),
            72: _collection(),
            80: _collection((81, COLLECTION)),
        },
    )
    profile = _profile(
        [1, 10, 100],
        add={90: [93], 100: [140], 110: [112], 160: [180]},
        remove={100: [110]},
    )

    result = resolve_profile(catalog, profile)

    assert _resolved_ids(result) == [
        50, 5, 4, 3, 1, 81, 91, 92, 93, 90, 11, 13, 14, 10, 180, 160, 140, 100,
    ]


def test_dependencies_come_first_without_duplicates():
    catalog = Catalog(workshop_items=_items({1: [2, 3], 2: [3], 3: [], 4: [3, 1]}))
    profile = _profile([4, 1, 2])

    order = _resolved_ids(resolve_profile(catalog, profile))

    assert sorted(order) == [1, 2, 3, 4]
    assert len(order) == len(set(order))
    for item_id in order:
        for required in catalog.workshop_items[item_id].requires:
            assert order.index(required) < order.index(item_id)


def test_cycle_terminates():
    catalog = Catalog(workshop_items=_items({1: [2], 2: [1]}))

    order = _resolved_ids(resolve(catalog, _profile([]), [1]))

    assert order == [2, 1]


def test_remove_override_excludes_stored_requirement():
    catalog = Catalog(workshop_items=_items({1: [2, 3], 2: [], 3: []}))
    profile = _profile([1], remove={1: [2]})

    assert _resolved_ids(resolve_profile(catalog, profile)) == [3, 1]


def test_add_override_includes_transitive_closure():
    catalog = Catalog(workshop_items=_items({1: [], 2: [3], 3: []}))
    profile = _profile([1], add={1: [2]})

    assert _resolved_ids(resolve_profile(catalog, profile)) == [3, 2, 1]


def test_remove_override_does_not_touch_collection_members():
    catalog = Catalog(
        workshop_items=_items({1: [], 2: []}),
        collections={7: _collection((1, ITEM), (2, ITEM))},
    )
    profile = _profile([], remove={7: [2]}, collections=[7])

    assert _resolved_ids(resolve_profile(catalog, profile)) == [1, 2]


def test_item_takes_precedence_over_collection_with_same_id():
    catalog = Catalog(
        workshop_items=_items({5: [], 6: []}),
        collections={5: _collection((6, ITEM))},
    )

    assert _resolved_ids(resolve(catalog, _profile([]), [5])) == [5]


def test_top_level_collections_follow_items():
    catalog = Catalog(
        workshop_items=_items({1: [], 2: []}),
        collections={9: _collection((2, ITEM), (1, ITEM))},
    )
    profile = _profile([1], collections=[9])

    assert _resolved_ids(resolve_profile(catalog, profile)) == [1, 2]


def test_unknown_id_raises():
    catalog = Catalog(workshop_items=_items({1: [404]}))

    with pytest.raises(ResolutionError) as excinfo:
        resolve(catalog, _profile([]), [1])

    assert excinfo.value.item_id == 404
    assert "404 is neither a collection nor a workshop item" in str(excinfo.value)


def test_deep_chain_does_not_recurse():
    depth = 5000
    requires = {item_id: [item_id + 1] for item_id in range(depth)}
    requires[depth] = []
    catalog = Catalog(workshop_items=_items(requires))

    order = _resolved_ids(resolve(catalog, _profile([]), [0]))

    assert order == list(range(depth, -1, -1))
