"""Seeded random mutation sequences against the folder engine.

After every step the displayed and confirmed forests must still be valid
forests: unique ids, nesting that agrees with parent_id, no cycles and
distinct positions among siblings.
"""
import asyncio
import random
from collections import defaultdict

import pytest

from notetree.exceptions import CircularReferenceError
from notetree.services.cycle_guard import validate_forest
from notetree.services.hierarchical_engine import HierarchicalCrudEngine
from notetree.services.tree_ops import find_duplicate_ids, flatten
from tests.fakes import make_folder, settle

STEPS = 60


def assert_valid(forest):
    validate_forest(forest)
    assert find_duplicate_ids(forest) == set()
    positions = defaultdict(list)
    for item in flatten(forest):
        positions[item.parent_id].append(item.position)
    for parent_id, taken in positions.items():
        assert len(taken) == len(set(taken)), f"duplicate positions under {parent_id}: {taken}"


def assert_engine_valid(engine):
    assert_valid(engine.entities)
    assert_valid(engine.confirmed)


@pytest.fixture
def engine(folder_store, folder_crud_config):
    forest = [
        make_folder(
            1,
            "Work",
            children=[
                make_folder(2, "Projects", parent_id=1, children=[make_folder(3, "Alpha", parent_id=2)]),
            ],
        ),
        make_folder(4, "Home", position=1),
    ]
    folder_store.seed(forest)
    return HierarchicalCrudEngine(folder_store.handlers(), folder_crud_config, entities=forest)


async def _create(engine, rng, ids, step):
    parent_id = rng.choice([None, *ids])
    data = {"name": f"Folder {step}"}
    if rng.random() < 0.4:
        data["position"] = rng.randint(0, 3)
    if parent_id is not None and rng.random() < 0.5:
        await engine.create_child(parent_id, data)
    else:
        await engine.create(data, parent_id)


async def _move(engine, rng, ids):
    entity_id = rng.choice(ids)
    target_id = rng.choice([None, *ids])
    position = rng.randint(0, 3) if rng.random() < 0.5 else None
    before = engine.entities
    try:
        await engine.move(entity_id, target_id, position)
    except CircularReferenceError:
        assert engine.entities == before


async def _fail(engine, rng, ids, folder_store):
    operation = rng.choice(["create", "delete", "move"]) if ids else "create"
    before = engine.entities
    folder_store.fail_next(operation)
    with pytest.raises(RuntimeError):
        if operation == "create":
            await engine.create({"name": "Doomed"}, rng.choice([None, *ids]))
        elif operation == "delete":
            await engine.delete(rng.choice(ids))
        else:
            await engine.move(rng.choice(ids), None)
    assert engine.entities == before


async def _overlap(engine, rng, ids, folder_store, step):
    """A root create held in flight while another folder moves to the top."""
    gate = folder_store.hold_next("create")
    task = asyncio.create_task(engine.create({"name": f"Held {step}"}))
    await settle()
    assert_engine_valid(engine)
    if ids:
        await engine.move(rng.choice(ids), None, 0)
        assert_engine_valid(engine)
    gate.set()
    await task


@pytest.mark.anyio
@pytest.mark.parametrize("seed", [1, 7, 42, 2024])
async def test_random_sequence_keeps_forest_valid(engine, folder_store, seed):
    rng = random.Random(seed)
    for step in range(STEPS):
        ids = [item.id for item in flatten(engine.entities)]
        operation = rng.choice(["create", "create", "delete", "move", "move", "fail", "overlap"])
        if operation == "create" or not ids:
            await _create(engine, rng, ids, step)
        elif operation == "delete":
            await engine.delete(rng.choice(ids))
        elif operation == "move":
            await _move(engine, rng, ids)
        elif operation == "fail":
            await _fail(engine, rng, ids, folder_store)
        else:
            await _overlap(engine, rng, ids, folder_store, step)
        assert_engine_valid(engine)
        assert not engine.pending_actions

    assert {item.id for item in flatten(engine.confirmed)} <= set(folder_store.rows)
