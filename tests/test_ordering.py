"""Tests for the sibling ordering policy."""
from notetree.services.ordering import (
    assign_positions,
    by_name,
    make_room,
    most_recent_first,
    next_position,
    siblings,
    sort_forest,
    sort_siblings,
)
from notetree.services.tree_ops import find_entity
from tests.fakes import at, make_folder, make_note


def root_folders(*positions):
    return [make_folder(i + 1, position=p) for i, p in enumerate(positions)]


class TestNextPosition:
    """Tests for next_position()."""

    def test_no_siblings_gives_zero(self):
        assert next_position([], None) == 0

    def test_max_plus_one_with_gaps(self):
        assert next_position(root_folders(0, 5, 2), None) == 6

    def test_exclude_id(self):
        assert next_position(root_folders(0, 5), None, exclude_id=2) == 1

    def test_counts_only_siblings_of_parent(self):
        forest = [
            make_folder(1, position=7, children=[make_folder(2, parent_id=1, position=3)]),
        ]
        assert next_position(forest, 1) == 4
        assert next_position(forest, 2) == 0

    def test_flat_notes_by_folder(self):
        notes = [make_note(1, folder_id=5, position=2), make_note(2, folder_id=6, position=9)]
        assert next_position(notes, 5) == 3


class TestMakeRoom:
    """Tests for make_room()."""

    def test_free_slot_changes_nothing(self):
        forest = root_folders(0, 2)
        assert make_room(forest, None, 1) == forest

    def test_taken_slot_shifts_at_and_above(self):
        result = make_room(root_folders(0, 1, 2), None, 1)
        assert [f.position for f in result] == [0, 2, 3]

    def test_excluded_entity_does_not_count(self):
        forest = root_folders(0, 1)
        assert make_room(forest, None, 1, exclude_id=2) == forest

    def test_other_parents_untouched(self):
        forest = [
            make_folder(1, position=0, children=[make_folder(3, parent_id=1, position=0)]),
            make_folder(2, position=1),
        ]
        result = make_room(forest, None, 0)
        assert find_entity(result, 3).position == 0
        assert [find_entity(result, i).position for i in (1, 2)] == [1, 2]


class TestSorting:
    """Tests for sort_siblings()/sort_forest() and tie breakers."""

    def test_position_first(self):
        forest = root_folders(2, 0, 1)
        assert [f.id for f in sort_siblings(forest)] == [2, 3, 1]

    def test_folder_ties_by_name(self):
        forest = [make_folder(1, "beta"), make_folder(2, "Alpha"), make_folder(3, "gamma", position=-1)]
        assert [f.id for f in sort_siblings(forest, by_name)] == [3, 2, 1]

    def test_note_ties_most_recent_first(self):
        notes = [
            make_note(1, updated_at=at(1)),
            make_note(2, updated_at=at(5)),
            make_note(3, updated_at=at(3)),
        ]
        assert [n.id for n in sort_siblings(notes, most_recent_first)] == [2, 3, 1]

    def test_sort_forest_recurses(self):
        forest = [
            make_folder(
                1,
                children=[
                    make_folder(3, parent_id=1, position=1),
                    make_folder(2, parent_id=1, position=0),
                ],
            )
        ]
        result = sort_forest(forest)
        assert [c.id for c in result[0].children] == [2, 3]


class TestHelpers:
    def test_assign_positions(self):
        assert assign_positions([7, 3, 9]) == {7: 0, 3: 1, 9: 2}

    def test_siblings(self):
        forest = [make_folder(1, children=[make_folder(2, parent_id=1)]), make_folder(3)]
        assert [f.id for f in siblings(forest, None)] == [1, 3]
        assert [f.id for f in siblings(forest, 1)] == [2]
