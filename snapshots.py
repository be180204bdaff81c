"""Snapshot storage, latest-view recompute, rollback, and read queries.

``recompute_latest`` is the only writer of ``club_latest``. It rebuilds the
guild's rows from scratch inside a single transaction, serialized per guild,
so readers never see a half-written view.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, text
from sqlalchemy.orm import Session, sessionmaker

from config import (
    METRIC_INSERT_CHUNK,
    PREVIOUS_WINDOW_MAX_DAYS,
    PREVIOUS_WINDOW_MIN_DAYS,
    RECOMPUTE_LOCK_TIMEOUT,
    TOP_MOVERS_DEFAULT,
    TOP_MOVERS_MAX,
)
from database import session_scope, utcnow
from exceptions import ConcurrentRecomputeConflict, RollbackUnavailable
from models import LatestRow, Member, Metric, MetricValue, Snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotRef:
    snapshot_id: int
    snapshot_at: datetime


@dataclass(frozen=True)
class MetricEntry:
    """One metric value to insert for a snapshot."""

    member_id: int
    metric: Metric
    value: Optional[int]


@dataclass(frozen=True)
class LatestMember:
    """Read-side copy of a ``club_latest`` row."""

    member_id: int
    display_name: str
    sim_power: Optional[int]
    total_power: Optional[int]
    sim_prev: Optional[int]
    total_prev: Optional[int]
    sim_pct_change: Optional[float]
    total_pct_change: Optional[float]
    latest_at: datetime


@dataclass(frozen=True)
class PreviousMember:
    member_id: int
    display_name: str
    total_power: Optional[int]


@dataclass(frozen=True)
class Mover:
    display_name: str
    pct_change: float
    current_value: Optional[int]
    previous_value: Optional[int]


@dataclass(frozen=True)
class TopMovers:
    metric: Metric
    gainers: list[Mover]
    losers: list[Mover]


@dataclass(frozen=True)
class Aggregates:
    members: int
    members_with_totals: int
    total_power: int
    average_power: Optional[int]


@dataclass(frozen=True)
class RollbackResult:
    removed_snapshot_id: int
    restored_snapshot_id: int
    restored_snapshot_at: datetime


def compute_pct(current: Optional[int], previous: Optional[int]) -> Optional[float]:
    """Percent change rounded to 2 decimals; ``None`` without a usable base."""
    if current is None or previous is None or previous == 0:
        return None
    return round((current - previous) / previous * 100, 2)


def _aggregate(db: Session, snapshot_id: int) -> dict[int, dict[Metric, Optional[int]]]:
    rows = db.execute(
        select(MetricValue.member_id, MetricValue.metric, MetricValue.value).where(
            MetricValue.snapshot_id == snapshot_id
        )
    ).all()
    per_member: dict[int, dict[Metric, Optional[int]]] = {}
    for member_id, metric, value in rows:
        values = per_member.setdefault(member_id, {Metric.SIM: None, Metric.TOTAL: None})
        current = values[metric]
        if value is not None and (current is None or value > current):
            values[metric] = value
    return per_member


class SnapshotStore:
    """Durable snapshot store for all guilds.

    Args:
        session_factory: A SQLAlchemy ``sessionmaker``.
        lock_timeout: Seconds to wait for a same-guild recompute to finish.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        lock_timeout: float = RECOMPUTE_LOCK_TIMEOUT,
    ) -> None:
        self.session_factory = session_factory
        self.lock_timeout = lock_timeout
        self._guild_locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with session_scope(self.session_factory) as db:
            yield db

    @contextmanager
    def guild_transaction(self, guild_id: str) -> Iterator[Session]:
        """Open a transaction holding the guild's recompute lock until it commits.

        Raises:
            ConcurrentRecomputeConflict: If the lock is not acquired within
                ``lock_timeout`` seconds.
        """
        lock = self._guild_lock(guild_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise ConcurrentRecomputeConflict(guild_id, self.lock_timeout)
        try:
            with session_scope(self.session_factory) as db:
                yield db
        finally:
            lock.release()

    def _guild_lock(self, guild_id: str) -> threading.RLock:
        with self._registry_lock:
            return self._guild_locks.setdefault(guild_id, threading.RLock())

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create_snapshot(
        self,
        db: Session,
        guild_id: str,
        created_by: str,
        notes: Optional[str] = None,
        snapshot_at: Optional[datetime] = None,
    ) -> SnapshotRef:
        snapshot = Snapshot(
            guild_id=guild_id,
            created_by=created_by,
            snapshot_at=snapshot_at or utcnow(),
            notes=notes,
        )
        db.add(snapshot)
        db.flush()
        logger.info("Created snapshot %d for guild %s", snapshot.id, guild_id)
        return SnapshotRef(snapshot.id, snapshot.snapshot_at)

    def insert_metrics(
        self, db: Session, snapshot_id: int, entries: Iterable[MetricEntry]
    ) -> int:
        """Bulk-insert metric rows in chunks of ``METRIC_INSERT_CHUNK``.

        Returns:
            Number of rows inserted.

        Raises:
            ValueError: On a duplicate (member, metric) pair or a negative value.
        """
        seen: set[tuple[int, Metric]] = set()
        payload = []
        for entry in entries:
            pair = (entry.member_id, entry.metric)
            if pair in seen:
                raise ValueError(
                    f"Duplicate {entry.metric.value} metric for member {entry.member_id}"
                )
            if entry.value is not None and entry.value < 0:
                raise ValueError(f"Negative metric value for member {entry.member_id}")
            seen.add(pair)
            payload.append(
                {
                    "snapshot_id": snapshot_id,
                    "member_id": entry.member_id,
                    "metric": entry.metric,
                    "value": entry.value,
                }
            )

        for start in range(0, len(payload), METRIC_INSERT_CHUNK):
            db.execute(MetricValue.__table__.insert(), payload[start:start + METRIC_INSERT_CHUNK])
        logger.debug("Inserted %d metric rows for snapshot %d", len(payload), snapshot_id)
        return len(payload)

    def recompute_latest(
        self,
        guild_id: str,
        snapshot_at: datetime,
        db: Optional[Session] = None,
    ) -> int:
        """Rebuild the guild's latest view anchored at *snapshot_at*.

        The previous snapshot is the newest one 6-8 days before the current
        one. When *db* is given the rebuild joins the caller's transaction,
        which should come from ``guild_transaction`` so the lock is held until
        it commits; otherwise it runs in its own locked transaction.

        Returns:
            Number of latest rows written.

        Raises:
            ConcurrentRecomputeConflict: If the guild's lock is not acquired
                within ``lock_timeout`` seconds.
            LookupError: If no snapshot exists at *snapshot_at*.
        """
        if db is None:
            with self.guild_transaction(guild_id) as own_db:
                return self._rebuild(own_db, guild_id, snapshot_at)
        lock = self._guild_lock(guild_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise ConcurrentRecomputeConflict(guild_id, self.lock_timeout)
        try:
            return self._rebuild(db, guild_id, snapshot_at)
        finally:
            lock.release()

    def _rebuild(self, db: Session, guild_id: str, snapshot_at: datetime) -> int:
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:g))"), {"g": guild_id})

        current = db.execute(
            select(Snapshot)
            .where(Snapshot.guild_id == guild_id, Snapshot.snapshot_at == snapshot_at)
            .order_by(Snapshot.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if current is None:
            raise LookupError(f"No snapshot for guild {guild_id} at {snapshot_at}")

        previous = db.execute(
            select(Snapshot)
            .where(
                Snapshot.guild_id == guild_id,
                Snapshot.snapshot_at.between(
                    current.snapshot_at - timedelta(days=PREVIOUS_WINDOW_MAX_DAYS),
                    current.snapshot_at - timedelta(days=PREVIOUS_WINDOW_MIN_DAYS),
                ),
            )
            .order_by(Snapshot.snapshot_at.desc(), Snapshot.id.desc())
            .limit(1)
        ).scalar_one_or_none()

        current_values = _aggregate(db, current.id)
        previous_values = _aggregate(db, previous.id) if previous else {}
        names = dict(
            db.execute(
                select(Member.id, Member.display_name).where(
                    Member.id.in_(list(current_values))
                )
            ).all()
        )

        rows = []
        for member_id in sorted(current_values):
            cur = current_values[member_id]
            prev = previous_values.get(member_id, {})
            rows.append(
                {
                    "guild_id": guild_id,
                    "member_id": member_id,
                    "display_name": names[member_id],
                    "sim_power": cur[Metric.SIM],
                    "total_power": cur[Metric.TOTAL],
                    "sim_prev": prev.get(Metric.SIM),
                    "total_prev": prev.get(Metric.TOTAL),
                    "sim_pct_change": compute_pct(cur[Metric.SIM], prev.get(Metric.SIM)),
                    "total_pct_change": compute_pct(cur[Metric.TOTAL], prev.get(Metric.TOTAL)),
                    "latest_at": current.snapshot_at,
                }
            )

        db.execute(delete(LatestRow).where(LatestRow.guild_id == guild_id))
        if rows:
            db.execute(LatestRow.__table__.insert(), rows)
        db.flush()
        logger.info(
            "Recomputed latest for guild %s: %d rows (previous snapshot %s)",
            guild_id,
            len(rows),
            previous.id if previous else None,
        )
        return len(rows)

    def rollback_latest(self, guild_id: str) -> RollbackResult:
        """Delete the newest snapshot and rebuild the view from the one before.

        Raises:
            RollbackUnavailable: If the guild has fewer than two snapshots.
        """
        with self.guild_transaction(guild_id) as db:
            snapshots = db.execute(
                select(Snapshot)
                .where(Snapshot.guild_id == guild_id)
                .order_by(Snapshot.snapshot_at.desc(), Snapshot.id.desc())
                .limit(2)
            ).scalars().all()
            if len(snapshots) < 2:
                raise RollbackUnavailable(guild_id, len(snapshots))
            latest, restored = snapshots
            removed_id = latest.id
            db.delete(latest)
            db.flush()
            self.recompute_latest(guild_id, restored.snapshot_at, db=db)
            logger.info(
                "Rolled back snapshot %d for guild %s; restored snapshot %d",
                removed_id,
                guild_id,
                restored.id,
            )
            return RollbackResult(removed_id, restored.id, restored.snapshot_at)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_latest(self, guild_id: str) -> list[LatestMember]:
        """Latest view ordered by total power (nulls last), then display name."""
        with self.transaction() as db:
            rows = db.execute(
                select(LatestRow)
                .where(LatestRow.guild_id == guild_id)
                .order_by(
                    LatestRow.total_power.is_(None),
                    LatestRow.total_power.desc(),
                    LatestRow.display_name.asc(),
                )
            ).scalars().all()
            return [
                LatestMember(
                    member_id=row.member_id,
                    display_name=row.display_name,
                    sim_power=row.sim_power,
                    total_power=row.total_power,
                    sim_prev=row.sim_prev,
                    total_prev=row.total_prev,
                    sim_pct_change=row.sim_pct_change,
                    total_pct_change=row.total_pct_change,
                    latest_at=row.latest_at,
                )
                for row in rows
            ]

    def get_top_movers(
        self,
        guild_id: str,
        metric: Metric = Metric.TOTAL,
        limit: int = TOP_MOVERS_DEFAULT,
    ) -> TopMovers:
        """Biggest percent gainers and losers for *metric*; limit clamped to 1..50."""
        limit = max(1, min(int(limit), TOP_MOVERS_MAX))
        if metric is Metric.SIM:
            pct, current, previous = LatestRow.sim_pct_change, LatestRow.sim_power, LatestRow.sim_prev
        else:
            pct, current, previous = (
                LatestRow.total_pct_change,
                LatestRow.total_power,
                LatestRow.total_prev,
            )

        def fetch(condition, ordering) -> list[Mover]:
            rows = db.execute(
                select(LatestRow.display_name, pct, current, previous)
                .where(LatestRow.guild_id == guild_id, condition)
                .order_by(ordering, LatestRow.display_name)
                .limit(limit)
            ).all()
            return [Mover(*row) for row in rows]

        with self.transaction() as db:
            return TopMovers(
                metric=metric,
                gainers=fetch(pct > 0, pct.desc()),
                losers=fetch(pct < 0, pct.asc()),
            )

    def get_aggregates(self, guild_id: str) -> Aggregates:
        with self.transaction() as db:
            members, with_totals, total = db.execute(
                select(
                    func.count(LatestRow.member_id),
                    func.count(LatestRow.total_power),
                    func.coalesce(func.sum(LatestRow.total_power), 0),
                ).where(LatestRow.guild_id == guild_id)
            ).one()
        average = round(total / with_totals) if with_totals else None
        return Aggregates(members, with_totals, int(total), average)

    def last_week_members(self, guild_id: str) -> dict[str, PreviousMember]:
        """Canonical key -> member summary for the current latest view."""
        with self.transaction() as db:
            rows = db.execute(
                select(
                    Member.canonical_key,
                    LatestRow.member_id,
                    LatestRow.display_name,
                    LatestRow.total_power,
                )
                .join(Member, Member.id == LatestRow.member_id)
                .where(LatestRow.guild_id == guild_id)
            ).all()
        return {
            key: PreviousMember(member_id, name, total) for key, member_id, name, total in rows
        }

    def list_snapshots(self, guild_id: str, limit: int = 20) -> list[SnapshotRef]:
        with self.transaction() as db:
            rows = db.execute(
                select(Snapshot.id, Snapshot.snapshot_at)
                .where(Snapshot.guild_id == guild_id)
                .order_by(Snapshot.snapshot_at.desc(), Snapshot.id.desc())
                .limit(limit)
            ).all()
        return [SnapshotRef(row.id, row.snapshot_at) for row in rows]
