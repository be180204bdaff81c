"""Shared test configuration and fixtures.

Provides an in-memory SQLite store, a seeding helper for prior snapshots,
and a fake vision oracle that serves canned JSON per image URL and model.
"""

import json
from datetime import datetime
from typing import Any, Optional, Union

import pytest

from database import init_db, make_engine
from members import MemberResolver
from models import Metric
from snapshots import MetricEntry, SnapshotRef, SnapshotStore

T0 = datetime(2026, 1, 1, 12, 0, 0)


class FakeOracle:
    """Async oracle stand-in.

    ``responses`` maps ``(url, model)`` or ``url`` to a payload dict, a raw
    string, or an exception to raise.
    """

    def __init__(self, responses: dict[Any, Union[dict, str, Exception]]) -> None:
        self.responses = responses
        self.calls: list[tuple[dict, str, str]] = []

    async def __call__(self, image_block: dict, system_prompt: str, model: str) -> str:
        self.calls.append((image_block, system_prompt, model))
        url = image_block["source"].get("url")
        response = self.responses.get((url, model), self.responses.get(url))
        if response is None:
            raise KeyError(f"No canned response for {url} / {model}")
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return response
        return json.dumps(response)


def payload(metric: Optional[str], rows: list[tuple[str, Any, float]]) -> dict:
    """Build an oracle payload from ``(name, value, confidence)`` tuples."""
    return {
        "metric": metric,
        "rows": [
            {"name": name, "value": value, "confidence": confidence}
            for name, value, confidence in rows
        ],
    }


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    factory = init_db(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def store(session_factory) -> SnapshotStore:
    return SnapshotStore(session_factory, lock_timeout=1.0)


@pytest.fixture
def seed(store):
    """Return a helper that commits a snapshot directly and recomputes."""

    def _seed(
        guild_id: str,
        totals: dict[str, Optional[int]],
        snapshot_at: datetime = T0,
        sims: Optional[dict[str, Optional[int]]] = None,
    ) -> SnapshotRef:
        names = list(dict.fromkeys(list(totals) + list(sims or {})))
        with store.transaction() as db:
            resolver = MemberResolver(db)
            ids = {name: resolver.resolve_or_create(guild_id, name, snapshot_at) for name in names}
            ref = store.create_snapshot(db, guild_id, "tester", snapshot_at=snapshot_at)
            entries = [MetricEntry(ids[name], Metric.TOTAL, value) for name, value in totals.items()]
            entries += [MetricEntry(ids[name], Metric.SIM, value) for name, value in (sims or {}).items()]
            store.insert_metrics(db, ref.snapshot_id, entries)
        store.recompute_latest(guild_id, ref.snapshot_at)
        return ref

    return _seed
