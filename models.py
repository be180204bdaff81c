"""SQLAlchemy models for members, aliases, snapshots, metrics and the latest view.

**IMMUTABILITY RULES:**
- Snapshots and their metric rows are never updated once written; a later
  snapshot supersedes them. The only delete is an explicit rollback, which
  cascades to the snapshot's metrics.
- Members are never hard-deleted; only ``display_name`` / ``last_seen_at``
  change on each observation.
- ``club_latest`` is a derived projection, rebuilt wholesale by
  ``snapshots.SnapshotStore.recompute_latest``.
"""

import enum

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Metric(str, enum.Enum):
    """Kind of power value read from a Manage Members screen."""

    SIM = "sim"
    TOTAL = "total"


class Member(Base):
    """A guild member identity, keyed by canonical name within the guild."""

    __tablename__ = "club_members"
    __table_args__ = (
        UniqueConstraint("guild_id", "canonical_key", name="uq_member_guild_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    guild_id = Column(String(64), nullable=False, index=True)
    canonical_key = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=False)
    last_seen_at = Column(DateTime, nullable=False, index=True)

    aliases = relationship("Alias", back_populates="member")

    def __repr__(self):
        return f"<Member(id={self.id}, guild='{self.guild_id}', key='{self.canonical_key}')>"


class Alias(Base):
    """An extra canonical key that resolves to an existing member."""

    __tablename__ = "club_aliases"
    __table_args__ = (
        UniqueConstraint("guild_id", "alias_key", name="uq_alias_guild_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    guild_id = Column(String(64), nullable=False, index=True)
    member_id = Column(
        Integer, ForeignKey("club_members.id", ondelete="CASCADE"), nullable=False
    )
    alias_key = Column(String(255), nullable=False)

    member = relationship("Member", back_populates="aliases")

    def __repr__(self):
        return f"<Alias(guild='{self.guild_id}', key='{self.alias_key}', member={self.member_id})>"


class Snapshot(Base):
    """One ingestion event. ``snapshot_at`` is the logical timestamp."""

    __tablename__ = "club_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    guild_id = Column(String(64), nullable=False, index=True)
    created_by = Column(String(64), nullable=False)
    snapshot_at = Column(DateTime, nullable=False, index=True)
    notes = Column(Text, nullable=True)

    metrics = relationship(
        "MetricValue",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Snapshot(id={self.id}, guild='{self.guild_id}', at={self.snapshot_at})>"


class MetricValue(Base):
    """A single (snapshot, member, metric) power value."""

    __tablename__ = "club_metrics"
    __table_args__ = (
        UniqueConstraint(
            "snapshot_id", "member_id", "metric", name="uq_metric_snapshot_member"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_id = Column(
        Integer,
        ForeignKey("club_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    member_id = Column(Integer, ForeignKey("club_members.id"), nullable=False)
    metric = Column(
        SQLEnum(Metric, name="club_metric", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    value = Column(BigInteger, nullable=True)

    snapshot = relationship("Snapshot", back_populates="metrics")


class LatestRow(Base):
    """Materialized per-member view of the current and previous snapshot."""

    __tablename__ = "club_latest"

    guild_id = Column(String(64), primary_key=True)
    member_id = Column(Integer, ForeignKey("club_members.id"), primary_key=True)
    display_name = Column(String(255), nullable=False)
    sim_power = Column(BigInteger, nullable=True)
    total_power = Column(BigInteger, nullable=True)
    sim_prev = Column(BigInteger, nullable=True)
    total_prev = Column(BigInteger, nullable=True)
    sim_pct_change = Column(Float, nullable=True)
    total_pct_change = Column(Float, nullable=True)
    latest_at = Column(DateTime, nullable=False)

    member = relationship("Member")
