"""Custom exception classes for the guild roster ingestion engine.

Parsing-level defects are recoverable and never abort a session. Guard
violations are raised to the session caller with enough structured detail to
drive a remediation UI. Storage failures propagate unmodified.
"""

from typing import Any, Optional


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class ParseFailure(Exception):
    """Raised when a raw OCR or user value cannot be interpreted as a power.

    Args:
        raw: The raw input that failed to parse.
        reason: Short machine-readable reason (e.g. ``"parse-failed"``).
    """

    def __init__(self, raw: Any, reason: str) -> None:
        self.raw = raw
        self.reason = reason
        super().__init__(f"Could not parse power value '{raw}': {reason}")


class OutlierRejected(ParseFailure):
    """Raised when a defective value is wildly larger than the page median."""

    def __init__(self, raw: Any) -> None:
        super().__init__(raw, "outlier")


# ---------------------------------------------------------------------------
# Vision oracle
# ---------------------------------------------------------------------------


class OracleError(Exception):
    """Base class for failures talking to the vision oracle."""


class OracleTransient(OracleError):
    """Raised for oracle failures that are worth retrying (rate limits, 5xx).

    Args:
        status_code: HTTP status of the failed call, if known.
        message: Description from the oracle client.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Transient oracle failure ({status_code}): {message}")


class OracleFatal(OracleError):
    """Raised when the oracle response cannot be used at all.

    Covers malformed JSON, schema violations, authentication and quota
    errors. Aborts extraction for the affected image.

    Args:
        reason: Short machine-readable reason (e.g. ``"invalid-response"``).
        detail: Human-readable explanation.
        raw: The raw oracle output, if available.
    """

    def __init__(self, reason: str, detail: str = "", raw: str = "") -> None:
        self.reason = reason
        self.detail = detail
        self.raw = raw
        super().__init__(f"Oracle failure '{reason}': {detail}")


# ---------------------------------------------------------------------------
# Review guards
# ---------------------------------------------------------------------------


class GuardViolation(Exception):
    """Base class for commit guards. Subclasses expose ``to_dict()``."""

    code = "guard-violation"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class CoverageGuardViolation(GuardViolation):
    """Raised when last week's members are missing from the merged set.

    Recoverable through OCR boost, manual fixes, or a privileged force commit.

    Args:
        coverage_pct: Rounded coverage percentage (0-100).
        missing: Display names of last week's members not seen this time.
        last_week_count: Number of members in last week's view.
    """

    code = "coverage-guard"

    def __init__(
        self,
        coverage_pct: int,
        missing: list[str],
        last_week_count: int,
    ) -> None:
        self.coverage_pct = coverage_pct
        self.missing = list(missing)
        self.last_week_count = last_week_count
        super().__init__(
            f"Coverage guard active: {coverage_pct}% coverage, 100% required. "
            f"{len(self.missing)} of {last_week_count} members missing from "
            f"last week. Use manual fixes or force commit."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "coverage_pct": self.coverage_pct,
            "missing": self.missing,
            "missing_count": len(self.missing),
            "last_week_count": self.last_week_count,
        }


class InsufficientRows(GuardViolation):
    """Raised when too few member rows have been assembled to commit.

    Args:
        row_count: Distinct members currently in the merged set.
        required: Minimum number of members needed.
    """

    code = "insufficient-rows"

    def __init__(self, row_count: int, required: int) -> None:
        self.row_count = row_count
        self.required = required
        super().__init__(
            f"Need at least {required} rows to commit (currently {row_count})."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "row_count": self.row_count,
            "required": self.required,
        }


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


class SessionError(Exception):
    """Base class for review-session misuse."""


class SessionNotFound(SessionError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Review session '{session_id}' not found")


class SessionExpired(SessionError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Review session '{session_id}' has expired")


class InvalidSessionState(SessionError):
    """Raised when an action is not allowed in the session's current state.

    Args:
        session_id: The review session identifier.
        state: Current state name.
        action: The attempted action.
    """

    def __init__(self, session_id: str, state: str, action: str) -> None:
        self.session_id = session_id
        self.state = state
        self.action = action
        super().__init__(
            f"Cannot {action} review session '{session_id}' in state '{state}'"
        )


class BoostLimitReached(SessionError):
    def __init__(self, session_id: str, limit: int) -> None:
        self.session_id = session_id
        self.limit = limit
        super().__init__(f"OCR boost already run {limit} times for '{session_id}'")


class UnauthorizedForceCommit(SessionError):
    def __init__(self, actor_id: str) -> None:
        self.actor_id = actor_id
        super().__init__(f"Actor '{actor_id}' is not allowed to force commit")


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class ConcurrentRecomputeConflict(Exception):
    """Raised when another recompute of the same guild holds the lock.

    Not retried automatically.

    Args:
        guild_id: The guild whose latest view is being rebuilt.
        timeout: Seconds waited for the lock.
    """

    def __init__(self, guild_id: str, timeout: float) -> None:
        self.guild_id = guild_id
        self.timeout = timeout
        super().__init__(
            f"Recompute for guild '{guild_id}' still locked after {timeout}s"
        )


class RollbackUnavailable(Exception):
    """Raised when a guild has fewer than two snapshots to roll back between."""

    def __init__(self, guild_id: str, snapshot_count: int) -> None:
        self.guild_id = guild_id
        self.snapshot_count = snapshot_count
        super().__init__(
            f"Cannot rollback guild '{guild_id}': "
            f"{snapshot_count} snapshot(s) exist, need at least 2"
        )


class AliasConflict(Exception):
    """Raised when an alias key is already another member's canonical key."""

    def __init__(self, guild_id: str, alias_key: str, owner_id: int) -> None:
        self.guild_id = guild_id
        self.alias_key = alias_key
        self.owner_id = owner_id
        super().__init__(
            f"Alias '{alias_key}' in guild '{guild_id}' is already the "
            f"canonical key of member {owner_id}"
        )


# ---------------------------------------------------------------------------
# Sheet mirror
# ---------------------------------------------------------------------------


class SheetSyncError(Exception):
    """Raised when the latest view cannot be mirrored to Google Sheets.

    Args:
        message: User-facing explanation.
        status_code: HTTP status from the Sheets API, if known.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)
