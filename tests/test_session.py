"""Tests for session.py: review workflow, QA, guards, corrections, commit."""

import asyncio
import threading
from unittest.mock import MagicMock

import pytest
from google.auth.exceptions import RefreshError
from sqlalchemy import func, select

from conftest import T0, FakeOracle, payload
from exceptions import (
    BoostLimitReached,
    ConcurrentRecomputeConflict,
    CoverageGuardViolation,
    InsufficientRows,
    InvalidSessionState,
    OracleFatal,
    SessionExpired,
    SessionNotFound,
    SheetSyncError,
    UnauthorizedForceCommit,
)
from export import SheetMirror, SheetSyncResult
from members import MemberResolver
from models import Member, Metric
from session import (
    Actor,
    ReviewPolicy,
    ReviewSession,
    SessionState,
    SessionStore,
    normalize_metric_type,
    open_session,
)
from snapshots import SnapshotStore
from vision import ExtractedRow, VisionExtractor

GUILD = "guild-1"
SIM_URL = "https://cdn.example.com/sim.png"
TOTAL_URL = "https://cdn.example.com/total.png"
OFFICER = Actor("officer")
ADMIN = Actor("admin", is_privileged=True)

ROSTER = [
    ("Ana", 150_000_000, 90_000_000),
    ("Bob", 140_000_000, 80_000_000),
    ("Cy", 130_000_000, 70_000_000),
    ("Dee", 120_000_000, 60_000_000),
    ("Eve", 110_000_000, 50_000_000),
]


def _extractor(responses: dict) -> VisionExtractor:
    return VisionExtractor(
        FakeOracle(responses),
        fast_model="fast",
        strong_model="strong",
        strict_model="strict",
    )


def _session(store, responses: dict, images=(TOTAL_URL,), **kwargs) -> ReviewSession:
    return ReviewSession(GUILD, OFFICER, list(images), _extractor(responses), store, **kwargs)


def _totals(names_values, confidence: float = 0.95) -> dict:
    return payload("total", [(name, value, confidence) for name, value in names_values])


def _ten_members() -> dict[str, int]:
    return {f"Member {i}": 100_000_000 + i * 1_000_000 for i in range(10)}


# ---------------------------------------------------------------------------
# Collection and first commit
# ---------------------------------------------------------------------------

class TestCollectAndCommit:
    """End-to-end ingest of a sim and a total screenshot."""

    def test_first_ingest_for_guild(self, store) -> None:
        """No prior snapshot: everyone is new and the commit writes both metrics."""
        responses = {
            SIM_URL: payload("sim", [(name, sim, 0.95) for name, _, sim in ROSTER]),
            TOTAL_URL: payload("total", [(name, total, 0.95) for name, total, _ in ROSTER]),
        }
        session = _session(store, responses, images=[SIM_URL, TOTAL_URL])

        report = asyncio.run(session.collect())

        assert session.state is SessionState.PREVIEWED
        assert report.missing == []
        assert sorted(report.new_names) == ["Ana", "Bob", "Cy", "Dee", "Eve"]
        assert report.coverage_pct == 100
        assert report.coverage_guard_triggered is False

        result = session.commit()

        assert result.member_count == 5
        assert result.metric_count == 10
        assert result.forced is False
        assert result.sheet_sync is None
        assert session.state is SessionState.COMMITTED
        latest = store.get_latest(GUILD)
        assert [row.display_name for row in latest] == ["Ana", "Bob", "Cy", "Dee", "Eve"]
        assert latest[0].sim_power == 90_000_000

    def test_merge_keeps_higher_value_and_longer_name(self, store) -> None:
        """The same member on two screenshots merges into one row."""
        other = "https://cdn.example.com/total-2.png"
        responses = {
            TOTAL_URL: _totals([("Ana", 150_000_000)]),
            other: _totals([("[Lead] Ana", 155_000_000)], confidence=0.6),
        }
        session = _session(store, responses, images=[TOTAL_URL, other])

        asyncio.run(session.collect())

        row = session.rows[Metric.TOTAL]["ana"]
        assert row.value == 155_000_000
        assert row.display_name == "[Lead] Ana"
        assert row.confidence == 0.95
        assert row.provenance == {TOTAL_URL, other}

    def test_partial_failure_recorded(self, store) -> None:
        """A failed screenshot is reported while the others still count."""
        bad = "https://cdn.example.com/broken.png"
        responses = {
            TOTAL_URL: _totals([(name, total) for name, total, _ in ROSTER]),
            bad: OracleFatal("invalid-response", "not json"),
        }
        session = _session(store, responses, images=[TOTAL_URL, bad])

        report = asyncio.run(session.collect())

        assert report.total_rows == 5
        assert len(session.extraction_errors) == 1
        assert session.extraction_errors[0].startswith(bad)

    def test_all_screenshots_failing_raises(self, store) -> None:
        """When nothing can be read, collect raises the first failure."""
        session = _session(store, {TOTAL_URL: OracleFatal("invalid-response")})

        with pytest.raises(OracleFatal):
            asyncio.run(session.collect())

    def test_forced_metric_type(self, store) -> None:
        """A session metric type overrides the screenshot's detected metric."""
        responses = {TOTAL_URL: payload(None, [(name, total, 0.95) for name, total, _ in ROSTER])}
        session = _session(store, responses, metric_type=Metric.SIM)

        asyncio.run(session.collect())

        assert len(session.rows[Metric.SIM]) == 5
        assert session.rows[Metric.TOTAL] == {}

    @pytest.mark.parametrize("count", [0, 11])
    def test_screenshot_count_bounds(self, store, count: int) -> None:
        """Between 1 and 10 screenshots are accepted."""
        with pytest.raises(ValueError):
            _session(store, {}, images=[TOTAL_URL] * count)


# ---------------------------------------------------------------------------
# QA signals
# ---------------------------------------------------------------------------

class TestQualityReport:
    """Tests for ReviewSession.recompute_qa()."""

    def test_suspicious_jump(self, store, seed) -> None:
        """A doubled total is flagged as suspicious with its percent change."""
        seed(GUILD, {"Ana": 100_000_000, "Bob": 100_000_000, "Cy": 100_000_000})
        responses = {
            TOTAL_URL: _totals([("Ana", 200_000_000), ("Bob", 101_000_000), ("Cy", 100_000_000)])
        }
        session = _session(store, responses)

        report = asyncio.run(session.collect())

        assert [change.display_name for change in report.suspicious] == ["Ana"]
        assert report.suspicious[0].pct == 100.0
        assert report.suspicious[0].previous == 100_000_000
        assert report.extreme_volatility is False

    def test_extreme_volatility(self, store, seed) -> None:
        """More than five members moving 40% or more trips the volatility flag."""
        names = [f"Member {i}" for i in range(6)]
        seed(GUILD, {name: 100_000_000 for name in names})
        session = _session(store, {TOTAL_URL: _totals([(name, 150_000_000) for name in names])})

        report = asyncio.run(session.collect())

        assert report.suspicious == []
        assert len(report.volatile) == 6
        assert report.extreme_volatility is True

    def test_low_confidence_listed_per_metric(self, store) -> None:
        """Rows under the confidence threshold are listed under their metric."""
        responses = {
            TOTAL_URL: payload(
                "total",
                [("Ana", 150_000_000, 0.5), ("Bob", 140_000_000, 0.9), ("Cy", 130_000_000, 0.69)],
            )
        }
        session = _session(store, responses)

        report = asyncio.run(session.collect())

        assert report.low_confidence[Metric.TOTAL] == ["ana", "cy"]
        assert report.low_confidence[Metric.SIM] == []
        assert report.to_dict()["low_confidence"] == {"sim": [], "total": ["ana", "cy"]}

    def test_alias_read_counts_as_known_member(self, store, seed) -> None:
        """An OCR name stored as an alias is matched to its member, not reported new."""
        seed(GUILD, {"Mr Snail": 150_000_000, "Ana": 140_000_000, "Bob": 130_000_000})
        with store.transaction() as db:
            resolver = MemberResolver(db)
            resolver.add_alias(GUILD, "snail", resolver.resolve(GUILD, "mr snail"))
        responses = {
            TOTAL_URL: _totals([("Snail", 151_000_000), ("Ana", 140_000_000), ("Bob", 130_000_000)])
        }
        session = _session(store, responses)

        report = asyncio.run(session.collect())

        assert report.missing == []
        assert report.new_names == []
        assert report.coverage_pct == 100
        assert report.coverage_guard_triggered is False
        assert session.rows[Metric.TOTAL]["mr snail"].value == 151_000_000
        assert "snail" not in session.rows[Metric.TOTAL]


# ---------------------------------------------------------------------------
# Commit guards
# ---------------------------------------------------------------------------

class TestCommitGuards:
    """Tests for the coverage, row-count and force-commit guards."""

    def test_coverage_guard_blocks_commit(self, store, seed) -> None:
        """Two of ten members missing gives 80% coverage and blocks commit."""
        seed(GUILD, _ten_members())
        covered = list(_ten_members().items())[:8]
        session = _session(store, {TOTAL_URL: _totals(covered)})

        report = asyncio.run(session.collect())

        assert report.coverage_pct == 80
        assert report.missing == ["Member 8", "Member 9"]
        assert report.coverage_guard_triggered is True
        with pytest.raises(CoverageGuardViolation) as exc_info:
            session.commit()
        assert exc_info.value.to_dict()["missing_count"] == 2
        assert exc_info.value.last_week_count == 10
        assert len(store.list_snapshots(GUILD)) == 1

    def test_force_requires_privilege(self, store, seed) -> None:
        """Only privileged actors may force past the coverage guard."""
        seed(GUILD, _ten_members())
        covered = list(_ten_members().items())[:8]
        session = _session(store, {TOTAL_URL: _totals(covered)})
        asyncio.run(session.collect())

        with pytest.raises(UnauthorizedForceCommit):
            session.commit(OFFICER, force=True)

        result = session.commit(ADMIN, force=True)

        assert result.forced is True
        assert result.member_count == 8
        assert len(store.get_latest(GUILD)) == 8

    def test_full_coverage_commits(self, store, seed) -> None:
        """Seeing every previous member commits without force."""
        seed(GUILD, _ten_members())
        session = _session(store, {TOTAL_URL: _totals(_ten_members().items())})

        report = asyncio.run(session.collect())
        result = session.commit()

        assert report.coverage_pct == 100
        assert result.member_count == 10
        assert len(store.list_snapshots(GUILD)) == 2

    def test_too_few_rows(self, store) -> None:
        """Fewer than three members cannot be committed, even by force."""
        session = _session(store, {TOTAL_URL: _totals([("Ana", 150_000_000), ("Bob", 140_000_000)])})
        asyncio.run(session.collect())

        with pytest.raises(InsufficientRows) as exc_info:
            session.commit(ADMIN, force=True)

        assert (exc_info.value.row_count, exc_info.value.required) == (2, 3)
        assert store.list_snapshots(GUILD) == []

    def test_commit_refused_while_guild_locked(self, session_factory) -> None:
        """A commit cannot start while another thread holds the guild's transaction."""
        store = SnapshotStore(session_factory, lock_timeout=0.01)
        session = _session(store, {TOTAL_URL: _totals([(name, total) for name, total, _ in ROSTER])})
        asyncio.run(session.collect())
        held, release = threading.Event(), threading.Event()

        def hold() -> None:
            with store.guild_transaction(GUILD):
                held.set()
                release.wait(5)

        worker = threading.Thread(target=hold)
        worker.start()
        held.wait(5)
        try:
            with pytest.raises(ConcurrentRecomputeConflict):
                session.commit()
        finally:
            release.set()
            worker.join()

        assert session.state is SessionState.PREVIEWED
        assert store.list_snapshots(GUILD) == []


# ---------------------------------------------------------------------------
# Manual fixes
# ---------------------------------------------------------------------------

class TestManualFix:
    """Tests for ReviewSession.apply_manual_fix()."""

    def test_partial_name_maps_to_last_week_member(self, store, seed) -> None:
        """'John = value' fills in the missing 'John Doe' from last week."""
        seed(GUILD, {"John Doe": 100_000_000, "Ana": 150_000_000, "Bob": 140_000_000})
        session = _session(store, {TOTAL_URL: _totals([("Ana", 150_000_000), ("Bob", 140_000_000)])})
        report = asyncio.run(session.collect())
        assert report.missing == ["John Doe"]

        result = session.apply_manual_fix("John = 123,456,789")

        assert result.errors == []
        [update] = result.applied
        assert update.canonical_key == "john doe"
        assert update.metric is Metric.TOTAL
        assert update.value == 123_456_789
        assert result.report.coverage_pct == 100
        row = session.rows[Metric.TOTAL]["john doe"]
        assert row.display_name == "John Doe"
        assert row.confidence == 1.0
        assert "manual" in row.provenance
        assert session.state is SessionState.PREVIEWED

    def test_new_alias_persisted_on_commit(self, store) -> None:
        """A manual name matching a known non-roster member becomes an alias."""
        with store.transaction() as db:
            snail_id = MemberResolver(db).resolve_or_create(GUILD, "Mr Snail", T0)
        session = _session(
            store,
            {TOTAL_URL: _totals([("Ana", 150_000_000), ("Bob", 140_000_000), ("Cy", 130_000_000)])},
        )
        asyncio.run(session.collect())

        session.apply_manual_fix("snail = 150,000,000")
        result = session.commit()

        assert session.pending_aliases == {"snail": snail_id}
        assert "snail" not in session.merged_keys()
        assert session.rows[Metric.TOTAL]["mr snail"].value == 150_000_000
        assert result.member_count == 4
        with store.transaction() as db:
            aliases = MemberResolver(db).list_aliases(GUILD)
            member_count = db.execute(
                select(func.count(Member.id)).where(Member.guild_id == GUILD)
            ).scalar_one()
        assert aliases == [("snail", snail_id)]
        assert member_count == 4
        assert snail_id in {row.member_id for row in store.get_latest(GUILD)}

    def test_known_member_outside_roster_replaces_ocr_row(self, store) -> None:
        """A fix for a known member not on last week's roster overrides their OCR value."""
        with store.transaction() as db:
            john_id = MemberResolver(db).resolve_or_create(GUILD, "John Doe", T0)
        responses = {
            TOTAL_URL: _totals(
                [("John Doe", 500_000_000), ("Ana", 150_000_000), ("Bob", 140_000_000)]
            )
        }
        session = _session(store, responses)
        asyncio.run(session.collect())

        result = session.apply_manual_fix("John, total=300,000,000")
        session.commit()

        [update] = result.applied
        assert update.canonical_key == "john doe"
        assert update.member_id == john_id
        assert "john" not in session.merged_keys()
        assert session.rows[Metric.TOTAL]["john doe"].value == 300_000_000
        assert session.pending_aliases == {"john": john_id}
        latest = {row.display_name: row.total_power for row in store.get_latest(GUILD)}
        assert latest["John Doe"] == 300_000_000
        assert len(latest) == 3

    def test_bad_lines_reported(self, store) -> None:
        """Unparseable lines and values are listed and skipped."""
        session = _session(store, {TOTAL_URL: _totals([("Ana", 150_000_000)])})
        asyncio.run(session.collect())

        result = session.apply_manual_fix("nonsense\n\nAna, sim=12a\n[Tag] = 5000000\nBob, sim=2.5M")

        assert len(result.errors) == 3
        assert [(u.canonical_key, u.metric, u.value) for u in result.applied] == [
            ("bob", Metric.SIM, 2_500_000)
        ]

    def test_rejected_value_reports_parser_reason(self, store) -> None:
        """A value the parser rejects is reported with its reason and not applied."""
        session = _session(store, {TOTAL_URL: _totals([("Ana", 150_000_000)])})
        asyncio.run(session.collect())

        result = session.apply_manual_fix("Ana = 12345")

        assert result.applied == []
        assert result.errors == [
            "Invalid value for Ana: Could not parse power value '12345': parse-failed"
        ]
        assert session.rows[Metric.TOTAL]["ana"].value == 150_000_000

    def test_explicit_metric_beats_session_type(self, store) -> None:
        """An explicit metric on a line wins over the session's forced metric."""
        session = _session(store, {}, metric_type=Metric.SIM)

        assert session.metric_for_line("total", "ana") is Metric.TOTAL
        assert session.metric_for_line(None, "ana") is Metric.SIM

    def test_metric_inferred_from_existing_rows(self, store) -> None:
        """A member with only one metric gets the other; otherwise total."""
        session = _session(store, {})
        session.merge_rows(Metric.TOTAL, [ExtractedRow("ana", "Ana", 150_000_000, 0.9)], "t")
        session.merge_rows(Metric.SIM, [ExtractedRow("bob", "Bob", 80_000_000, 0.9)], "s")

        assert session.metric_for_line(None, "ana") is Metric.SIM
        assert session.metric_for_line(None, "bob") is Metric.TOTAL
        assert session.metric_for_line(None, "cy") is Metric.TOTAL


# ---------------------------------------------------------------------------
# OCR boost
# ---------------------------------------------------------------------------

class TestOcrBoost:
    """Tests for ReviewSession.ocr_boost()."""

    def _boosted_session(self, store, seed, **kwargs) -> ReviewSession:
        seed(GUILD, {"Ana": 150_000_000, "Bob": 140_000_000, "Cy": 130_000_000, "Dee": 120_000_000})
        responses = {
            (TOTAL_URL, "strong"): payload(
                "total",
                [("Ana", 150_000_000, 0.95), ("Bob", 140_000_000, 0.95), ("Cy", 130_000_000, 0.5)],
            ),
            (TOTAL_URL, "strict"): payload(
                "total",
                [
                    ("Ana", 999_000_000, 0.95),
                    ("Cy", 131_000_000, 0.95),
                    ("Dee", 121_000_000, 0.9),
                ],
            ),
        }
        session = _session(store, responses, **kwargs)
        asyncio.run(session.collect())
        return session

    def test_only_targets_are_merged(self, store, seed) -> None:
        """Missing and low-confidence members are filled; others untouched."""
        session = self._boosted_session(store, seed)

        report = asyncio.run(session.ocr_boost())

        rows = session.rows[Metric.TOTAL]
        assert rows["ana"].value == 150_000_000
        assert rows["cy"].value == 131_000_000
        assert rows["cy"].confidence == 0.95
        assert rows["dee"].provenance == {f"{TOTAL_URL}#strict"}
        assert report.missing == []
        assert session.strict_runs == 1
        assert session.extractor.oracle.calls[-1][2] == "strict"

    def test_boost_limit(self, store, seed) -> None:
        """Boosting beyond the policy limit raises BoostLimitReached."""
        session = self._boosted_session(store, seed, policy=ReviewPolicy(max_ocr_boosts=1))
        asyncio.run(session.ocr_boost())

        with pytest.raises(BoostLimitReached):
            asyncio.run(session.ocr_boost())

    def test_nothing_to_boost(self, store) -> None:
        """With no targets the boost is skipped and not counted."""
        session = _session(store, {TOTAL_URL: _totals([(name, total) for name, total, _ in ROSTER])})
        asyncio.run(session.collect())

        asyncio.run(session.ocr_boost())

        assert session.strict_runs == 0


# ---------------------------------------------------------------------------
# Lifecycle and session store
# ---------------------------------------------------------------------------

class TestLifecycle:
    """Tests for expiry, cancellation and the session store."""

    def test_expired_session_rejects_actions(self, store) -> None:
        """Past its TTL a session is expired and cannot commit."""
        now = [0.0]
        session = _session(
            store,
            {TOTAL_URL: _totals([(name, total) for name, total, _ in ROSTER])},
            policy=ReviewPolicy(ttl_seconds=10),
            clock=lambda: now[0],
        )
        asyncio.run(session.collect())
        now[0] = 11.0

        with pytest.raises(SessionExpired):
            session.commit()

        assert session.state is SessionState.EXPIRED
        assert store.list_snapshots(GUILD) == []

    def test_cancelled_session_cannot_commit(self, store) -> None:
        """Commit after cancel is an invalid state transition."""
        session = _session(store, {TOTAL_URL: _totals([(name, total) for name, total, _ in ROSTER])})
        asyncio.run(session.collect())
        session.cancel()

        with pytest.raises(InvalidSessionState) as exc_info:
            session.commit()

        assert exc_info.value.state == "cancelled"

    def test_store_get_and_expiry(self, store) -> None:
        """An expired session is evicted on lookup."""
        now = [0.0]
        session = _session(store, {}, policy=ReviewPolicy(ttl_seconds=10), clock=lambda: now[0])
        sessions = SessionStore()
        sessions.put(session)

        assert sessions.get(session.session_id) is session

        now[0] = 10.0
        with pytest.raises(SessionExpired):
            sessions.get(session.session_id)
        with pytest.raises(SessionNotFound):
            sessions.get(session.session_id)

    def test_reap_removes_finished_and_expired(self, store) -> None:
        """Reaping drops terminal and expired sessions and keeps live ones."""
        now = [0.0]
        policy = ReviewPolicy(ttl_seconds=10)
        live = _session(store, {}, policy=policy, clock=lambda: now[0])
        stale = _session(store, {}, policy=ReviewPolicy(ttl_seconds=1), clock=lambda: now[0])
        cancelled = _session(store, {}, policy=policy, clock=lambda: now[0])
        cancelled.cancel()
        sessions = SessionStore()
        for session in (live, stale, cancelled):
            sessions.put(session)
        now[0] = 5.0

        removed = sessions.reap()

        assert set(removed) == {stale.session_id, cancelled.session_id}
        assert len(sessions) == 1
        assert stale.state is SessionState.EXPIRED

    def test_open_session_registers_and_collects(self, store) -> None:
        """open_session normalizes the metric type and stores the session."""
        sessions = SessionStore()
        responses = {TOTAL_URL: payload(None, [(name, sim, 0.95) for name, _, sim in ROSTER])}

        session = asyncio.run(
            open_session(sessions, _extractor(responses), store, GUILD, OFFICER, [TOTAL_URL], "Sim Power")
        )

        assert session.metric_type is Metric.SIM
        assert session.state is SessionState.PREVIEWED
        assert sessions.get(session.session_id) is session

    def test_open_session_evicts_on_failure(self, store) -> None:
        """A session whose collection fails is not left registered."""
        sessions = SessionStore()
        extractor = _extractor({TOTAL_URL: OracleFatal("invalid-response")})

        with pytest.raises(OracleFatal):
            asyncio.run(open_session(sessions, extractor, store, GUILD, OFFICER, [TOTAL_URL]))

        assert len(sessions) == 0

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("sim", Metric.SIM),
            ("Sim Power", Metric.SIM),
            ("TOTAL", Metric.TOTAL),
            ("power", Metric.TOTAL),
            ("both", None),
            ("", None),
            ("mystery", None),
        ],
    )
    def test_normalize_metric_type(self, raw: str, expected) -> None:
        """Metric type aliases map onto Metric; anything else means both."""
        assert normalize_metric_type(raw) is expected


# ---------------------------------------------------------------------------
# Sheet mirror
# ---------------------------------------------------------------------------

class TestSheetMirror:
    """Tests for the post-commit sheet mirror hook."""

    def _committable(self, store, mirror) -> ReviewSession:
        session = _session(
            store,
            {TOTAL_URL: _totals([(name, total) for name, total, _ in ROSTER])},
            sheet_mirror=mirror,
        )
        asyncio.run(session.collect())
        return session

    def test_mirror_receives_latest_rows(self, store) -> None:
        """The hook is called with the guild and its rebuilt latest view."""
        mirror = MagicMock(return_value=SheetSyncResult(ok=True, row_count=5))
        session = self._committable(store, mirror)

        result = session.commit()

        assert result.sheet_sync.ok is True
        guild_id, rows = mirror.call_args.args
        assert guild_id == GUILD
        assert [row.display_name for row in rows] == ["Ana", "Bob", "Cy", "Dee", "Eve"]

    def test_mirror_failure_keeps_snapshot(self, store) -> None:
        """A failed sheet push is reported without undoing the commit."""
        mirror = MagicMock(side_effect=SheetSyncError("permission denied", 403))
        session = self._committable(store, mirror)

        result = session.commit()

        assert result.sheet_sync.ok is False
        assert "permission denied" in result.sheet_sync.error
        assert session.state is SessionState.COMMITTED
        assert len(store.list_snapshots(GUILD)) == 1

    def test_expired_credentials_keep_snapshot(self, store) -> None:
        """A token refresh failure inside the real mirror does not escape commit."""
        client = MagicMock()
        client.open_by_key.side_effect = RefreshError("invalid_grant: account disabled")
        session = self._committable(store, SheetMirror(spreadsheet_id="abc", client=client))

        result = session.commit()

        assert result.sheet_sync.ok is False
        assert "authentication failed" in result.sheet_sync.error
        assert session.state is SessionState.COMMITTED
        assert len(store.list_snapshots(GUILD)) == 1
