"""Review sessions: collect, QA, correct, and commit a roster snapshot.

A ``ReviewSession`` holds every intermediate row in memory. Nothing touches
the durable store until ``commit``, which writes aliases, members, the
snapshot, its metrics, and the recomputed latest view in one transaction.
The sheet mirror runs afterwards as a separate step whose failure is
recorded on the result instead of undoing the commit.

State flow::

    collecting -> previewed -> (ocr_boosting | manual_editing) -> previewed
               -> committed | cancelled | expired
"""

import asyncio
import enum
import logging
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from config import (
    EXTREME_VOLATILITY_COUNT,
    EXTREME_VOLATILITY_PCT,
    LOW_CONFIDENCE_THRESHOLD,
    MANUAL_CONFIDENCE,
    MAX_OCR_BOOSTS,
    MAX_SCREENSHOTS,
    MIN_ROWS_FOR_COMMIT,
    SESSION_REAP_INTERVAL,
    SESSION_TTL_SECONDS,
    SUSPICIOUS_JUMP_PCT,
)
from database import utcnow
from exceptions import (
    BoostLimitReached,
    CoverageGuardViolation,
    InsufficientRows,
    InvalidSessionState,
    OracleError,
    ParseFailure,
    SessionExpired,
    SessionNotFound,
    SheetSyncError,
    UnauthorizedForceCommit,
)
from export import SheetSyncResult
from members import MemberResolver
from models import Member, Metric
from parse import canonicalize, parse_manual_line, parse_power
from snapshots import LatestMember, MetricEntry, PreviousMember, SnapshotStore
from vision import EnsembleStats, ExtractedRow, ImageRef, VisionExtractor, describe_ref

logger = logging.getLogger(__name__)

SheetMirrorHook = Callable[[str, list[LatestMember]], SheetSyncResult]

_METRIC_ALIASES: dict[str, Optional[Metric]] = {
    "sim": Metric.SIM,
    "sim_power": Metric.SIM,
    "simpower": Metric.SIM,
    "total": Metric.TOTAL,
    "power": Metric.TOTAL,
    "total_power": Metric.TOTAL,
    "totalpower": Metric.TOTAL,
    "both": None,
}


def normalize_metric_type(raw: Optional[str]) -> Optional[Metric]:
    """Map a user-supplied metric type to a ``Metric``; ``None`` means both.

    Unknown or empty input falls back to both.
    """
    if not raw:
        return None
    return _METRIC_ALIASES.get(str(raw).strip().lower().replace(" ", "_"))


@dataclass(frozen=True)
class ReviewPolicy:
    """Thresholds that gate a review session, overridable per guild."""

    low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD
    suspicious_jump_pct: float = SUSPICIOUS_JUMP_PCT
    extreme_volatility_pct: float = EXTREME_VOLATILITY_PCT
    extreme_volatility_count: int = EXTREME_VOLATILITY_COUNT
    min_rows_for_commit: int = MIN_ROWS_FOR_COMMIT
    max_ocr_boosts: int = MAX_OCR_BOOSTS
    max_screenshots: int = MAX_SCREENSHOTS
    ttl_seconds: float = SESSION_TTL_SECONDS


class SessionState(str, enum.Enum):
    COLLECTING = "collecting"
    PREVIEWED = "previewed"
    OCR_BOOSTING = "ocr_boosting"
    MANUAL_EDITING = "manual_editing"
    COMMITTED = "committed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


_TERMINAL_STATES = frozenset(
    {SessionState.COMMITTED, SessionState.CANCELLED, SessionState.EXPIRED}
)


@dataclass(frozen=True)
class Actor:
    user_id: str
    is_privileged: bool = False


@dataclass
class MetricRow:
    """One member's merged value for one metric, with where it came from."""

    canonical_key: str
    display_name: str
    value: Optional[int]
    confidence: float
    provenance: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class SuspiciousChange:
    canonical_key: str
    display_name: str
    previous: int
    current: int
    pct: float


@dataclass
class QAReport:
    """QA signals for the merged row set, recomputed on every change."""

    missing_keys: list[str]
    missing: list[str]
    new_names: list[str]
    suspicious: list[SuspiciousChange]
    low_confidence: dict[Metric, list[str]]
    volatile: list[str]
    extreme_volatility: bool
    total_rows: int
    last_week_count: int
    coverage: float
    coverage_pct: int
    coverage_guard_triggered: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "missing": self.missing,
            "missing_keys": self.missing_keys,
            "new_names": self.new_names,
            "suspicious": [
                {
                    "name": change.display_name,
                    "previous": change.previous,
                    "current": change.current,
                    "pct": change.pct,
                }
                for change in self.suspicious
            ],
            "low_confidence": {
                metric.value: keys for metric, keys in self.low_confidence.items()
            },
            "volatile": self.volatile,
            "extreme_volatility": self.extreme_volatility,
            "total_rows": self.total_rows,
            "last_week_count": self.last_week_count,
            "coverage_pct": self.coverage_pct,
            "coverage_guard_triggered": self.coverage_guard_triggered,
        }


@dataclass(frozen=True)
class ManualUpdate:
    canonical_key: str
    display_name: str
    metric: Metric
    value: int
    member_id: Optional[int] = None


@dataclass
class ManualFixResult:
    applied: list[ManualUpdate]
    errors: list[str]
    report: QAReport


@dataclass
class CommitResult:
    snapshot_id: int
    snapshot_at: Any
    member_count: int
    metric_count: int
    forced: bool
    sheet_sync: Optional[SheetSyncResult] = None


class ReviewSession:
    """In-memory review of one screenshot batch for one guild.

    Args:
        guild_id: Guild whose roster is being ingested.
        actor: Who opened the session.
        images: 1 to ``policy.max_screenshots`` image references.
        extractor: Vision extractor used for collection and OCR boost.
        store: Durable snapshot store.
        metric_type: Force every screenshot to this metric; ``None`` lets
            the oracle decide per screenshot.
        policy: Review thresholds.
        sheet_mirror: Optional post-commit hook that mirrors the latest view.
        clock: Monotonic clock used for expiry.

    Raises:
        ValueError: If the number of images is outside the allowed range.
    """

    def __init__(
        self,
        guild_id: str,
        actor: Actor,
        images: Sequence[ImageRef],
        extractor: VisionExtractor,
        store: SnapshotStore,
        metric_type: Optional[Metric] = None,
        policy: Optional[ReviewPolicy] = None,
        sheet_mirror: Optional[SheetMirrorHook] = None,
        notes: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or ReviewPolicy()
        if not 1 <= len(images) <= self.policy.max_screenshots:
            raise ValueError(
                f"Attach between 1 and {self.policy.max_screenshots} screenshots "
                f"(got {len(images)})"
            )
        self.session_id = uuid.uuid4().hex
        self.guild_id = guild_id
        self.actor = actor
        self.images = list(images)
        self.extractor = extractor
        self.store = store
        self.metric_type = metric_type
        self.sheet_mirror = sheet_mirror
        self.notes = notes
        self.clock = clock
        self.created_at = clock()

        self.state = SessionState.COLLECTING
        self.rows: dict[Metric, dict[str, MetricRow]] = {Metric.SIM: {}, Metric.TOTAL: {}}
        self.last_week: dict[str, PreviousMember] = {}
        self.pending_aliases: dict[str, int] = {}
        self.alias_keys: dict[str, str] = {}
        self.extraction_errors: list[str] = []
        self.ensemble_stats: Optional[EnsembleStats] = None
        self.strict_runs = 0
        self.qa: Optional[QAReport] = None

    # -----------------------------------------------------------------------
    # Lifecycle helpers
    # -----------------------------------------------------------------------

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.state in (SessionState.COMMITTED, SessionState.CANCELLED):
            return False
        now = self.clock() if now is None else now
        return now - self.created_at >= self.policy.ttl_seconds

    def _require(self, action: str, *states: SessionState) -> None:
        if self.state is not SessionState.EXPIRED and self.is_expired():
            self.state = SessionState.EXPIRED
            logger.info("Review session %s expired", self.session_id)
        if self.state is SessionState.EXPIRED:
            raise SessionExpired(self.session_id)
        if self.state not in states:
            raise InvalidSessionState(self.session_id, self.state.value, action)

    def cancel(self) -> None:
        self._require("cancel", SessionState.COLLECTING, SessionState.PREVIEWED)
        self.state = SessionState.CANCELLED
        logger.info("Review session %s cancelled", self.session_id)

    # -----------------------------------------------------------------------
    # Collection and merging
    # -----------------------------------------------------------------------

    async def collect(self) -> QAReport:
        """Extract every screenshot, merge the rows, and run QA.

        Images whose extraction fails are recorded in ``extraction_errors``.

        Raises:
            OracleError: If no screenshot could be read at all.
        """
        self._require("collect", SessionState.COLLECTING)
        self.last_week = self.store.last_week_members(self.guild_id)
        with self.store.transaction() as db:
            self.alias_keys = MemberResolver(db).alias_targets(self.guild_id)
        results = await self.extractor.extract_many(self.images, self.metric_type)

        failures: list[OracleError] = []
        for ref, outcome in zip(self.images, results):
            source = describe_ref(ref)
            if isinstance(outcome, OracleError):
                failures.append(outcome)
                self.extraction_errors.append(f"{source}: {outcome}")
                continue
            self.merge_rows(outcome.metric, outcome.rows, source)
            if outcome.ensemble is not None:
                if self.ensemble_stats is None:
                    self.ensemble_stats = EnsembleStats()
                self.ensemble_stats.merge(outcome.ensemble)

        if len(failures) == len(self.images):
            raise failures[0]

        self.state = SessionState.PREVIEWED
        report = self.recompute_qa()
        logger.info(
            "Session %s collected %d members from %d screenshots (coverage %d%%)",
            self.session_id, report.total_rows, len(self.images), report.coverage_pct,
        )
        return report

    def merge_rows(
        self,
        metric: Metric,
        rows: Sequence[ExtractedRow],
        source: str,
        only: Optional[set[str]] = None,
    ) -> None:
        """Fold extracted rows into the per-metric map.

        Keeps the higher value and higher confidence, prefers the longer
        display name, and unions provenance. Keys known as aliases are folded
        into their member's canonical key. Restricted to keys in *only* when
        given.
        """
        target = self.rows[metric]
        for row in rows:
            key = self.alias_keys.get(row.canonical_key, row.canonical_key)
            if only is not None and key not in only:
                continue
            existing = target.get(key)
            if existing is None:
                target[key] = MetricRow(
                    key, row.display_name, row.value, row.confidence, {source}
                )
                continue
            if existing.value is None or row.value > existing.value:
                existing.value = row.value
            if len(row.display_name) > len(existing.display_name):
                existing.display_name = row.display_name
            existing.confidence = max(existing.confidence, row.confidence)
            existing.provenance.add(source)

    def merged_keys(self) -> set[str]:
        return set(self.rows[Metric.SIM]) | set(self.rows[Metric.TOTAL])

    def display_name_for(self, key: str) -> str:
        names = [
            rows[key].display_name for rows in self.rows.values() if key in rows
        ]
        return max(names, key=len) if names else key

    def recompute_qa(self) -> QAReport:
        """Recompute missing, new, suspicious, low-confidence and coverage."""
        merged = self.merged_keys()
        previous_keys = set(self.last_week)
        missing_keys = sorted(previous_keys - merged)
        new_keys = sorted(merged - previous_keys)

        suspicious: list[SuspiciousChange] = []
        volatile: list[str] = []
        for key, row in self.rows[Metric.TOTAL].items():
            previous = self.last_week.get(key)
            if previous is None or not previous.total_power or row.value is None:
                continue
            pct = (row.value - previous.total_power) / previous.total_power * 100
            if abs(pct) >= self.policy.suspicious_jump_pct:
                suspicious.append(
                    SuspiciousChange(
                        key, row.display_name, previous.total_power, row.value, round(pct, 2)
                    )
                )
            if abs(pct) >= self.policy.extreme_volatility_pct:
                volatile.append(key)
        suspicious.sort(key=lambda change: abs(change.pct), reverse=True)

        low_confidence = {
            metric: sorted(
                key
                for key, row in rows.items()
                if row.confidence < self.policy.low_confidence_threshold
            )
            for metric, rows in self.rows.items()
        }

        last_week_count = len(previous_keys)
        coverage = 1 - len(missing_keys) / last_week_count if last_week_count else 1.0
        self.qa = QAReport(
            missing_keys=missing_keys,
            missing=[self.last_week[key].display_name for key in missing_keys],
            new_names=[self.display_name_for(key) for key in new_keys],
            suspicious=suspicious,
            low_confidence=low_confidence,
            volatile=sorted(volatile),
            extreme_volatility=len(volatile) > self.policy.extreme_volatility_count,
            total_rows=len(merged),
            last_week_count=last_week_count,
            coverage=coverage,
            coverage_pct=round(coverage * 100),
            coverage_guard_triggered=bool(missing_keys) and last_week_count > 0,
        )
        return self.qa

    # -----------------------------------------------------------------------
    # Corrections
    # -----------------------------------------------------------------------

    async def ocr_boost(self) -> QAReport:
        """Re-read every screenshot in strict mode for missing and weak rows.

        Raises:
            BoostLimitReached: After ``policy.max_ocr_boosts`` runs.
        """
        self._require("boost", SessionState.PREVIEWED)
        if self.strict_runs >= self.policy.max_ocr_boosts:
            raise BoostLimitReached(self.session_id, self.policy.max_ocr_boosts)

        report = self.qa or self.recompute_qa()
        targets = set(report.missing_keys)
        for keys in report.low_confidence.values():
            targets.update(keys)
        if not targets:
            logger.info("Session %s: nothing to boost", self.session_id)
            return report

        self.state = SessionState.OCR_BOOSTING
        try:
            results = await self.extractor.extract_many(
                self.images, self.metric_type, strict=True
            )
        finally:
            self.state = SessionState.PREVIEWED

        for ref, outcome in zip(self.images, results):
            source = f"{describe_ref(ref)}#strict"
            if isinstance(outcome, OracleError):
                self.extraction_errors.append(f"{source}: {outcome}")
                continue
            self.merge_rows(outcome.metric, outcome.rows, source, only=targets)

        self.strict_runs += 1
        report = self.recompute_qa()
        logger.info(
            "Session %s OCR boost %d/%d: coverage %d%%",
            self.session_id, self.strict_runs, self.policy.max_ocr_boosts, report.coverage_pct,
        )
        return report

    def metric_for_line(self, explicit: Optional[str], key: str) -> Metric:
        """Pick the metric a manual line applies to.

        An explicit metric wins, then the session's forced metric. Otherwise
        a member with only a total gets the sim value and vice versa;
        anything else defaults to total.
        """
        if explicit:
            return Metric(explicit)
        if self.metric_type is not None:
            return self.metric_type
        has_sim = key in self.rows[Metric.SIM]
        has_total = key in self.rows[Metric.TOTAL]
        if has_total and not has_sim:
            return Metric.SIM
        if has_sim and not has_total:
            return Metric.TOTAL
        return Metric.TOTAL

    def apply_manual_fix(self, text: str) -> ManualFixResult:
        """Apply ``Name = value`` / ``Name, metric=value`` lines.

        Each name is matched to a known member where possible and the value
        is stored under that member's key, replacing any OCR row for it. A
        typed name that differs from the matched key is remembered as an
        alias to persist at commit. Lines that cannot be parsed are reported
        in ``errors`` and skipped.
        """
        self._require("edit", SessionState.PREVIEWED)
        self.state = SessionState.MANUAL_EDITING
        applied: list[ManualUpdate] = []
        errors: list[str] = []
        by_member_id = {prev.member_id: key for key, prev in self.last_week.items()}

        try:
            with self.store.transaction() as db:
                resolver = MemberResolver(db)
                for line in text.splitlines():
                    if not line.strip():
                        continue
                    parsed = parse_manual_line(line)
                    if parsed is None:
                        errors.append(f"Could not parse line: {line.strip()}")
                        continue
                    key = canonicalize(parsed.name)
                    if not key:
                        errors.append(f"No usable name in line: {line.strip()}")
                        continue
                    try:
                        value = parse_power(parsed.raw_value, trusted=True).unwrap(parsed.raw_value)
                    except ParseFailure as exc:
                        errors.append(f"Invalid value for {parsed.name}: {exc}")
                        continue

                    display = parsed.name
                    member_id = resolver.find_likely(self.guild_id, parsed.name)
                    if member_id is not None and member_id in by_member_id:
                        key = by_member_id[member_id]
                        display = self.last_week[key].display_name
                    elif member_id is not None:
                        member = db.get(Member, member_id)
                        if member.canonical_key != key:
                            self.pending_aliases[key] = member_id
                            self.alias_keys[key] = member.canonical_key
                            key = member.canonical_key
                            display = member.display_name or display

                    metric = self.metric_for_line(parsed.metric, key)
                    existing = self.rows[metric].get(key)
                    provenance = set(existing.provenance) if existing else set()
                    provenance.add("manual")
                    self.rows[metric][key] = MetricRow(
                        key, display, value, MANUAL_CONFIDENCE, provenance
                    )
                    applied.append(ManualUpdate(key, display, metric, value, member_id))
                    logger.debug("Manual fix %s %s=%d", key, metric.value, value)
        finally:
            self.state = SessionState.PREVIEWED

        return ManualFixResult(applied, errors, self.recompute_qa())

    # -----------------------------------------------------------------------
    # Commit
    # -----------------------------------------------------------------------

    def check_guards(self, actor: Actor, force: bool = False) -> QAReport:
        """Raise the first guard that blocks a commit by *actor*.

        Raises:
            UnauthorizedForceCommit: *force* requested by an unprivileged actor.
            InsufficientRows: Fewer than ``policy.min_rows_for_commit`` members.
            CoverageGuardViolation: Last week's members missing without *force*.
        """
        if force and not actor.is_privileged:
            raise UnauthorizedForceCommit(actor.user_id)
        report = self.recompute_qa()
        if report.total_rows < self.policy.min_rows_for_commit:
            raise InsufficientRows(report.total_rows, self.policy.min_rows_for_commit)
        if report.coverage_guard_triggered and not force:
            raise CoverageGuardViolation(
                report.coverage_pct, report.missing, report.last_week_count
            )
        return report

    def _metric_entries(self, member_ids: dict[str, int]) -> list[MetricEntry]:
        values: dict[tuple[int, Metric], Optional[int]] = {}
        for metric, rows in self.rows.items():
            for key, row in rows.items():
                pair = (member_ids[key], metric)
                if pair in values:
                    logger.warning(
                        "Keys resolving to member %d share a %s value; keeping the higher",
                        pair[0], metric.value,
                    )
                    if (row.value or 0) <= (values[pair] or 0):
                        continue
                values[pair] = row.value
        ordered = sorted(values.items(), key=lambda item: (item[0][0], item[0][1].value))
        return [MetricEntry(member_id, metric, value) for (member_id, metric), value in ordered]

    def commit(self, actor: Optional[Actor] = None, force: bool = False) -> CommitResult:
        """Persist the session as a new snapshot and rebuild the latest view.

        Aliases, member upserts, the snapshot, its metrics, and the recompute
        share one transaction, which holds the guild lock until it commits.
        The sheet mirror runs afterwards.

        Raises:
            GuardViolation: If a commit guard blocks the commit.
            UnauthorizedForceCommit: If *force* is used without privilege.
            ConcurrentRecomputeConflict: If the guild is being recomputed.
        """
        actor = actor or self.actor
        self._require("commit", SessionState.PREVIEWED)
        self.check_guards(actor, force)
        if force and self.qa.coverage_guard_triggered:
            logger.warning(
                "Force commit by %s for guild %s at %d%% coverage",
                actor.user_id, self.guild_id, self.qa.coverage_pct,
            )

        seen_at = utcnow()
        with self.store.guild_transaction(self.guild_id) as db:
            resolver = MemberResolver(db)
            for alias_key, member_id in self.pending_aliases.items():
                resolver.add_alias(self.guild_id, alias_key, member_id)
            keys = sorted(self.merged_keys())
            member_ids = resolver.upsert_members(
                self.guild_id,
                [(key, self.display_name_for(key)) for key in keys],
                seen_at=seen_at,
            )
            ref = self.store.create_snapshot(
                db, self.guild_id, actor.user_id, self.notes, snapshot_at=seen_at
            )
            metric_count = self.store.insert_metrics(
                db, ref.snapshot_id, self._metric_entries(member_ids)
            )
            self.store.recompute_latest(self.guild_id, ref.snapshot_at, db=db)

        self.state = SessionState.COMMITTED
        logger.info(
            "Session %s committed snapshot %d (%d members, %d metrics)",
            self.session_id, ref.snapshot_id, len(set(member_ids.values())), metric_count,
        )
        return CommitResult(
            snapshot_id=ref.snapshot_id,
            snapshot_at=ref.snapshot_at,
            member_count=len(set(member_ids.values())),
            metric_count=metric_count,
            forced=force,
            sheet_sync=self._publish(),
        )

    def _publish(self) -> Optional[SheetSyncResult]:
        if self.sheet_mirror is None:
            return None
        try:
            return self.sheet_mirror(self.guild_id, self.store.get_latest(self.guild_id))
        except SheetSyncError as exc:
            logger.warning("Sheet push failed for guild %s: %s", self.guild_id, exc)
            return SheetSyncResult(ok=False, row_count=0, error=str(exc))


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class SessionStore:
    """Thread-safe in-process map of open review sessions."""

    def __init__(self) -> None:
        self._sessions: dict[str, ReviewSession] = {}
        self._lock = threading.Lock()

    def put(self, session: ReviewSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> ReviewSession:
        """Return an open session.

        Raises:
            SessionNotFound: Unknown or already evicted id.
            SessionExpired: The session outlived its TTL; it is evicted.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session.is_expired():
                session.state = SessionState.EXPIRED
                del self._sessions[session_id]
                raise SessionExpired(session_id)
            return session

    def evict(self, session_id: str) -> Optional[ReviewSession]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def reap(self, now: Optional[float] = None) -> list[str]:
        """Drop expired and finished sessions; return the removed ids."""
        with self._lock:
            removed = []
            for session_id, session in list(self._sessions.items()):
                if session.state in _TERMINAL_STATES:
                    removed.append(session_id)
                elif session.is_expired(now):
                    session.state = SessionState.EXPIRED
                    removed.append(session_id)
            for session_id in removed:
                del self._sessions[session_id]
        if removed:
            logger.debug("Reaped %d review sessions", len(removed))
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    async def run_reaper(
        self,
        interval: float = SESSION_REAP_INTERVAL,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """Reap every *interval* seconds until *stop* is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            self.reap()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue


async def open_session(
    sessions: SessionStore,
    extractor: VisionExtractor,
    store: SnapshotStore,
    guild_id: str,
    actor: Actor,
    images: Sequence[ImageRef],
    metric_type: Union[str, Metric, None] = "both",
    policy: Optional[ReviewPolicy] = None,
    sheet_mirror: Optional[SheetMirrorHook] = None,
    notes: Optional[str] = None,
) -> ReviewSession:
    """Create, register, and collect a review session.

    The session is evicted again if collection fails.
    """
    if not isinstance(metric_type, Metric):
        metric_type = normalize_metric_type(metric_type)
    session = ReviewSession(
        guild_id,
        actor,
        images,
        extractor,
        store,
        metric_type=metric_type,
        policy=policy,
        sheet_mirror=sheet_mirror,
        notes=notes,
    )
    sessions.put(session)
    logger.info(
        "Opened review session %s for guild %s (%d screenshots)",
        session.session_id, guild_id, len(images),
    )
    try:
        await session.collect()
    except Exception:
        sessions.evict(session.session_id)
        raise
    return session
