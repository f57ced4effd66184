"""Tests for Synapse records and SynapseManager reinforcement, decay and reads."""

from __future__ import annotations

import dataclasses
import sqlite3
from datetime import datetime, timezone

import pytest

from hebbian_memory.config import LearningConfig
from hebbian_memory.storage import Storage
from hebbian_memory.synapses import Synapse, SynapseManager
from tests.conftest import (
    ago,
    count_synapses,
    get_weight,
    insert_neuron,
    insert_synapse,
)


async def _pair(storage: Storage) -> tuple[int, int]:
    a = await insert_neuron(storage, "src/a.py")
    b = await insert_neuron(storage, "src/b.py")
    return a, b


def _directed(storage: Storage) -> SynapseManager:
    cfg = dataclasses.replace(storage.config, learning=LearningConfig(directed=True))
    return SynapseManager(storage, cfg)


# -----------------------------------------------------------------------
# 1. Synapse dataclass and canonical keys
# -----------------------------------------------------------------------


class TestSynapseBasics:
    def test_other_endpoint(self) -> None:
        syn = Synapse(1, 2, 0.5, 1, "t", None, "t")
        assert syn.other(1) == 2
        assert syn.other(2) == 1

    def test_to_dict(self) -> None:
        syn = Synapse(1, 2, 0.5, 3, "t", None, "c")
        assert syn.to_dict()["co_activation_count"] == 3

    async def test_canonical_undirected(self, storage: Storage) -> None:
        mgr = SynapseManager(storage)
        assert mgr.directed is False
        assert mgr.canonical(5, 2) == (2, 5)
        assert mgr.canonical(2, 5) == (2, 5)

    async def test_canonical_directed(self, storage: Storage) -> None:
        mgr = _directed(storage)
        assert mgr.directed is True
        assert mgr.canonical(5, 2) == (5, 2)


# -----------------------------------------------------------------------
# 2. Saturating reinforcement
# -----------------------------------------------------------------------


class TestReinforce:
    """``w += rate * (1 - w)`` applied inside SQL."""

    async def test_new_synapse_starts_at_rate(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        mgr = SynapseManager(storage)

        def _go(conn: sqlite3.Connection) -> float:
            return mgr.reinforce_in_conn(conn, a, b, 0.1)

        assert await storage.execute_transaction(_go) == pytest.approx(0.1)

    async def test_existing_synapse_saturates(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        mgr = SynapseManager(storage)

        def _go(conn: sqlite3.Connection) -> float:
            mgr.reinforce_in_conn(conn, a, b, 0.1)
            return mgr.reinforce_in_conn(conn, a, b, 0.1)

        assert await storage.execute_transaction(_go) == pytest.approx(0.19)
        syn = await mgr.get_between(a, b)
        assert syn is not None
        assert syn.co_activation_count == 2

    async def test_symmetric_single_row(self, storage: Storage) -> None:
        """Reinforcing (a, b) and (b, a) hits one undirected row."""
        a, b = await _pair(storage)
        mgr = SynapseManager(storage)

        def _go(conn: sqlite3.Connection) -> None:
            mgr.reinforce_in_conn(conn, a, b, 0.1)
            mgr.reinforce_in_conn(conn, b, a, 0.1)

        await storage.execute_transaction(_go)
        assert await count_synapses(storage) == 1
        assert await get_weight(storage, b, a) == pytest.approx(0.19)
        assert (await mgr.get_between(b, a)) == (await mgr.get_between(a, b))

    async def test_directed_keeps_both_orders(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        mgr = _directed(storage)

        def _go(conn: sqlite3.Connection) -> None:
            mgr.reinforce_in_conn(conn, a, b, 0.1)
            mgr.reinforce_in_conn(conn, b, a, 0.3)

        await storage.execute_transaction(_go)
        assert await count_synapses(storage) == 2
        assert await get_weight(storage, a, b, directed=True) == pytest.approx(0.1)
        assert await get_weight(storage, b, a, directed=True) == pytest.approx(0.3)

    async def test_self_link_ignored(self, storage: Storage) -> None:
        a, _ = await _pair(storage)
        mgr = SynapseManager(storage)

        def _go(conn: sqlite3.Connection) -> float:
            return mgr.reinforce_in_conn(conn, a, a, 0.5)

        assert await storage.execute_transaction(_go) == 0.0
        assert await count_synapses(storage) == 0

    async def test_weight_stays_bounded(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        mgr = SynapseManager(storage)

        def _go(conn: sqlite3.Connection) -> float:
            weight = 0.0
            for _ in range(200):
                weight = mgr.reinforce_in_conn(conn, a, b, 0.5)
            return weight

        weight = await storage.execute_transaction(_go)
        assert 0.99 <= weight <= 1.0

    async def test_floor_variant(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        c = await insert_neuron(storage, "src/c.py")
        await insert_synapse(storage, a, b, weight=0.2)
        mgr = SynapseManager(storage)

        def _go(conn: sqlite3.Connection) -> tuple[float, float]:
            return (
                mgr.reinforce_floor_in_conn(conn, a, b, 0.85),
                mgr.reinforce_floor_in_conn(conn, a, c, 0.85),
            )

        existing, fresh = await storage.execute_transaction(_go)
        assert existing == pytest.approx(0.2 + 0.85 * 0.8)
        assert fresh == pytest.approx(0.85)


# -----------------------------------------------------------------------
# 3. Decay and pruning
# -----------------------------------------------------------------------


class TestDecayAndPrune:
    async def test_decay_by_idle_days(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        await insert_synapse(storage, a, b, weight=0.5, last_reinforced_at=ago(days=10))
        mgr = SynapseManager(storage)
        now = datetime.now(tz=timezone.utc)

        def _go(conn: sqlite3.Connection) -> int:
            return mgr.decay_in_conn(conn, now)

        assert await storage.execute_transaction(_go) == 1
        assert await get_weight(storage, a, b) == pytest.approx(0.5 * 0.98**10, rel=1e-3)

    async def test_decay_does_not_double_count(self, storage: Storage) -> None:
        """A second pass measures from last_decayed_at, not from reinforcement."""
        a, b = await _pair(storage)
        await insert_synapse(storage, a, b, weight=0.5, last_reinforced_at=ago(days=10))
        mgr = SynapseManager(storage)

        def _go(conn: sqlite3.Connection) -> int:
            return mgr.decay_in_conn(conn, datetime.now(tz=timezone.utc))

        await storage.execute_transaction(_go)
        after_first = await get_weight(storage, a, b)
        await storage.execute_transaction(_go)
        after_second = await get_weight(storage, a, b)
        assert after_second <= after_first
        assert after_second == pytest.approx(after_first, rel=1e-6)

    async def test_fresh_synapse_untouched(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        await insert_synapse(storage, a, b, weight=0.5, last_reinforced_at=ago(days=-1))
        mgr = SynapseManager(storage)

        def _go(conn: sqlite3.Connection) -> int:
            return mgr.decay_in_conn(conn, datetime.now(tz=timezone.utc))

        assert await storage.execute_transaction(_go) == 0
        assert await get_weight(storage, a, b) == 0.5

    async def test_prune_weak(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        c = await insert_neuron(storage, "src/c.py")
        await insert_synapse(storage, a, b, weight=0.04)
        await insert_synapse(storage, a, c, weight=0.06)
        mgr = SynapseManager(storage)
        assert await mgr.prune_weak() == 1
        assert await get_weight(storage, a, b) is None
        assert await get_weight(storage, a, c) == pytest.approx(0.06)
        assert await mgr.prune_weak(threshold=0.1) == 1
        assert await mgr.count() == 0


# -----------------------------------------------------------------------
# 4. Neighbour reads
# -----------------------------------------------------------------------


class TestNeighbours:
    async def test_undirected_both_endpoints(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        c = await insert_neuron(storage, "src/c.py")
        await insert_synapse(storage, a, b, weight=0.3)
        await insert_synapse(storage, b, c, weight=0.7)
        mgr = SynapseManager(storage)

        neighbours = await mgr.get_neighbors(b)
        assert [(nid, syn.weight) for nid, syn in neighbours] == [(c, 0.7), (a, 0.3)]
        assert [nid for nid, _ in await mgr.get_neighbors(a)] == [b]

    async def test_min_weight_and_limit(self, storage: Storage) -> None:
        hub = await insert_neuron(storage, "src/hub.py")
        spokes = [await insert_neuron(storage, f"src/s{i}.py") for i in range(4)]
        for spoke, weight in zip(spokes, (0.1, 0.4, 0.6, 0.8)):
            await insert_synapse(storage, hub, spoke, weight=weight)
        mgr = SynapseManager(storage)

        strong = await mgr.get_neighbors(hub, min_weight=0.4)
        assert [syn.weight for _, syn in strong] == [0.8, 0.6, 0.4]
        assert len(await mgr.get_neighbors(hub, limit=2)) == 2

    async def test_ties_broken_by_neighbour_id(self, storage: Storage) -> None:
        hub = await insert_neuron(storage, "src/hub.py")
        first = await insert_neuron(storage, "src/x.py")
        second = await insert_neuron(storage, "src/y.py")
        await insert_synapse(storage, hub, second, weight=0.5)
        await insert_synapse(storage, hub, first, weight=0.5)
        neighbours = await SynapseManager(storage).get_neighbors(hub)
        assert [nid for nid, _ in neighbours] == [first, second]

    async def test_directed_outgoing_only(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        await insert_synapse(storage, a, b, weight=0.5, directed=True)
        mgr = _directed(storage)
        assert [nid for nid, _ in await mgr.get_neighbors(a)] == [b]
        assert await mgr.get_neighbors(b) == []

    async def test_batch(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        c = await insert_neuron(storage, "src/c.py")
        await insert_synapse(storage, a, b, weight=0.5)
        mgr = SynapseManager(storage)
        batch = await mgr.get_neighbors_batch([a, b, c])
        assert [nid for nid, _ in batch[a]] == [b]
        assert [nid for nid, _ in batch[b]] == [a]
        assert batch[c] == []
        assert await mgr.get_neighbors_batch([]) == {}

    async def test_degrees(self, storage: Storage) -> None:
        a, b = await _pair(storage)
        c = await insert_neuron(storage, "src/c.py")
        await insert_synapse(storage, a, b)
        await insert_synapse(storage, a, c)
        degrees = await SynapseManager(storage).degrees([a, b, c])
        assert degrees == {a: 2, b: 1, c: 1}
