"""Tests for the pure forest functions."""
from notetree.services.tree_ops import (
    add_entity,
    find_duplicate_ids,
    find_entity,
    flatten,
    map_entities,
    move_entity,
    remove_entity,
    replace_entity,
    update_entity,
)
from tests.fakes import at, make_folder, make_note


def sample_forest():
    """1 (2 (3)), 4"""
    return [
        make_folder(
            1,
            "Work",
            children=[
                make_folder(2, "Projects", parent_id=1, children=[make_folder(3, "Alpha", parent_id=2)]),
            ],
        ),
        make_folder(4, "Home", position=1),
    ]


class TestAddEntity:
    """Tests for add_entity()."""

    def test_add_at_root(self):
        forest = sample_forest()
        result = add_entity(forest, make_folder(5, position=2))
        assert [f.id for f in result] == [1, 4, 5]

    def test_add_under_nested_parent(self):
        forest = sample_forest()
        result = add_entity(forest, make_folder(5, parent_id=3), parent_id=3)
        alpha = find_entity(result, 3)
        assert [c.id for c in alpha.children] == [5]

    def test_add_appends_to_existing_children(self):
        forest = sample_forest()
        result = add_entity(forest, make_folder(5, parent_id=1, position=1), parent_id=1)
        assert [c.id for c in find_entity(result, 1).children] == [2, 5]

    def test_unknown_parent_leaves_forest_unchanged(self):
        forest = sample_forest()
        result = add_entity(forest, make_folder(5, parent_id=99), parent_id=99)
        assert result == forest
        assert result is not forest

    def test_input_is_not_mutated(self):
        forest = sample_forest()
        snapshot = [f.model_copy(deep=True) for f in forest]
        add_entity(forest, make_folder(5, parent_id=2), parent_id=2)
        assert forest == snapshot


class TestRemoveEntity:
    """Tests for remove_entity()."""

    def test_remove_takes_subtree(self):
        result = remove_entity(sample_forest(), 2)
        assert find_entity(result, 2) is None
        assert find_entity(result, 3) is None
        assert find_entity(result, 1).children == []

    def test_remove_root(self):
        result = remove_entity(sample_forest(), 4)
        assert [f.id for f in result] == [1]

    def test_remove_missing_id_is_noop(self):
        forest = sample_forest()
        assert remove_entity(forest, 99) == forest


class TestUpdateEntity:
    """Tests for update_entity()."""

    def test_patch_and_timestamp(self):
        result = update_entity(sample_forest(), 3, {"name": "Beta"}, now=at(10))
        alpha = find_entity(result, 3)
        assert alpha.name == "Beta"
        assert alpha.updated_at == at(10)

    def test_children_are_kept(self):
        result = update_entity(sample_forest(), 1, {"name": "Office"}, now=at(1))
        assert [c.id for c in find_entity(result, 1).children] == [2]

    def test_other_nodes_untouched(self):
        forest = sample_forest()
        result = update_entity(forest, 3, {"name": "Beta"}, now=at(10))
        assert find_entity(result, 4) == find_entity(forest, 4)


class TestReplaceEntity:
    """Tests for replace_entity()."""

    def test_replacement_without_children_keeps_existing_ones(self):
        replacement = make_folder(1, "Office", updated_at=at(5))
        result = replace_entity(sample_forest(), 1, replacement)
        office = find_entity(result, 1)
        assert office.name == "Office"
        assert office.updated_at == at(5)
        assert [c.id for c in office.children] == [2]

    def test_replacement_with_children_wins(self):
        replacement = make_folder(1, "Office", children=[])
        result = replace_entity(sample_forest(), 1, replacement)
        assert find_entity(result, 1).children == []


class TestMoveEntity:
    """Tests for move_entity()."""

    def test_nested_move_relocates_subtree(self):
        result = move_entity(sample_forest(), 2, 4, position=0, now=at(3))
        home = find_entity(result, 4)
        assert [c.id for c in home.children] == [2]
        moved = home.children[0]
        assert moved.parent_id == 4
        assert moved.position == 0
        assert moved.updated_at == at(3)
        assert [c.id for c in moved.children] == [3]
        assert find_entity(result, 1).children == []

    def test_move_to_root(self):
        result = move_entity(sample_forest(), 3, None, position=2)
        assert [f.id for f in result] == [1, 4, 3]
        assert find_entity(result, 3).parent_id is None

    def test_without_position_keeps_old_one(self):
        result = move_entity(sample_forest(), 4, 1)
        assert find_entity(result, 4).position == 1

    def test_flat_move_changes_linkage_only(self):
        notes = [make_note(10, folder_id=1), make_note(11, folder_id=1, position=1)]
        result = move_entity(notes, 10, 2, position=0, nested=False)
        assert [n.id for n in result] == [11, 10]
        assert find_entity(result, 10).parent_id == 2

    def test_missing_entity_is_noop(self):
        forest = sample_forest()
        assert move_entity(forest, 99, 1) == forest


class TestQueries:
    """Tests for find/flatten/map helpers."""

    def test_find_deep(self):
        assert find_entity(sample_forest(), 3).name == "Alpha"

    def test_find_missing(self):
        assert find_entity(sample_forest(), 42) is None

    def test_flatten_is_pre_order(self):
        assert [f.id for f in flatten(sample_forest())] == [1, 2, 3, 4]

    def test_map_entities_visits_every_node(self):
        result = map_entities(sample_forest(), lambda f: f.model_copy(update={"is_favorite": True}))
        assert all(f.is_favorite for f in flatten(result))

    def test_duplicate_ids(self):
        forest = sample_forest() + [make_folder(3)]
        assert find_duplicate_ids(forest) == {3}
        assert find_duplicate_ids(sample_forest()) == set()
