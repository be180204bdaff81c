"""Tests for export.py: Google Sheets mirror and CSV export."""

import csv
from datetime import datetime
from unittest.mock import MagicMock, patch

import gspread
import pytest
import requests
from google.auth.exceptions import RefreshError

from config import SHEET_HEADER
from exceptions import SheetSyncError
from export import (
    SheetMirror,
    SheetSyncResult,
    build_latest_values,
    ensure_worksheet,
    get_sheets_client,
    push_latest,
    write_latest_csv,
)
from snapshots import LatestMember


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _latest(name: str, sim=None, total=None, total_pct=None) -> LatestMember:
    """Create a latest-view row with only the columns the sheet uses."""
    return LatestMember(
        member_id=1,
        display_name=name,
        sim_power=sim,
        total_power=total,
        sim_prev=None,
        total_prev=None,
        sim_pct_change=None,
        total_pct_change=total_pct,
        latest_at=datetime(2026, 1, 1),
    )


def _api_error(status: int, message: str = "denied") -> gspread.exceptions.APIError:
    """Build a gspread APIError around a fake HTTP response."""
    response = MagicMock()
    response.status_code = status
    response.json.return_value = {
        "error": {"code": status, "message": message, "status": "PERMISSION_DENIED"}
    }
    return gspread.exceptions.APIError(response)


ROWS = [
    _latest("Ana", sim=90_000_000, total=150_000_000, total_pct=10.5),
    _latest("Bob", total=140_000_000),
]


# ---------------------------------------------------------------------------
# build_latest_values
# ---------------------------------------------------------------------------

class TestBuildLatestValues:
    """Tests for build_latest_values()."""

    def test_header_and_rows(self) -> None:
        """Header first, then name, sim, total and pct with blanks for None."""
        values = build_latest_values(ROWS)

        assert values[0] == SHEET_HEADER
        assert values[1] == ["Ana", 90_000_000, 150_000_000, 10.5]
        assert values[2] == ["Bob", "", 140_000_000, ""]

    def test_empty_view(self) -> None:
        """An empty view still writes the header."""
        assert build_latest_values([]) == [SHEET_HEADER]


# ---------------------------------------------------------------------------
# Worksheet handling
# ---------------------------------------------------------------------------

class TestPushLatest:
    """Tests for ensure_worksheet() and push_latest()."""

    def test_missing_tab_is_created(self) -> None:
        """A missing tab is added with the configured size."""
        spreadsheet = MagicMock()
        spreadsheet.worksheet.side_effect = gspread.exceptions.WorksheetNotFound("Club Latest")

        ensure_worksheet(spreadsheet, "Club Latest")

        spreadsheet.add_worksheet.assert_called_once_with(title="Club Latest", rows=500, cols=6)

    def test_clears_then_writes(self) -> None:
        """The range is cleared before the new values are written."""
        client = MagicMock()
        spreadsheet = client.open_by_key.return_value
        spreadsheet.url = "https://docs.google.com/spreadsheets/d/abc"
        worksheet = spreadsheet.worksheet.return_value

        result = push_latest(client, "abc", ROWS)

        client.open_by_key.assert_called_once_with("abc")
        worksheet.batch_clear.assert_called_once_with(["A:D"])
        worksheet.update.assert_called_once_with(
            values=build_latest_values(ROWS),
            range_name="A1",
            value_input_option="USER_ENTERED",
        )
        assert result == SheetSyncResult(
            ok=True,
            row_count=2,
            sheet_name="Club Latest",
            sheet_url="https://docs.google.com/spreadsheets/d/abc",
        )

    def test_permission_denied_hint(self) -> None:
        """A 403 is wrapped with a hint to share the spreadsheet."""
        client = MagicMock()
        client.open_by_key.return_value.worksheet.return_value.update.side_effect = _api_error(403)

        with pytest.raises(SheetSyncError, match="Share the spreadsheet") as exc_info:
            push_latest(client, "abc", ROWS)

        assert exc_info.value.status_code == 403

    def test_spreadsheet_not_found(self) -> None:
        """An unknown spreadsheet id maps to a 404 SheetSyncError."""
        client = MagicMock()
        client.open_by_key.side_effect = gspread.exceptions.SpreadsheetNotFound()

        with pytest.raises(SheetSyncError) as exc_info:
            push_latest(client, "missing", ROWS)

        assert exc_info.value.status_code == 404

    def test_token_refresh_failure(self) -> None:
        """A credential refresh error raised mid-push becomes SheetSyncError."""
        client = MagicMock()
        client.open_by_key.side_effect = RefreshError("invalid_grant: account disabled")

        with pytest.raises(SheetSyncError, match="authentication failed"):
            push_latest(client, "abc", ROWS)

    def test_transport_failure(self) -> None:
        """A dropped connection during the write becomes SheetSyncError."""
        client = MagicMock()
        worksheet = client.open_by_key.return_value.worksheet.return_value
        worksheet.update.side_effect = requests.exceptions.ConnectionError("reset by peer")

        with pytest.raises(SheetSyncError, match="request failed"):
            push_latest(client, "abc", ROWS)


# ---------------------------------------------------------------------------
# SheetMirror / get_sheets_client
# ---------------------------------------------------------------------------

class TestSheetMirror:
    """Tests for the SheetMirror post-commit hook."""

    def test_no_spreadsheet_configured(self) -> None:
        """Without a spreadsheet id the mirror refuses to push."""
        with pytest.raises(SheetSyncError, match="No spreadsheet configured"):
            SheetMirror(spreadsheet_id="")("guild-1", ROWS)

    def test_missing_key_file(self, tmp_path) -> None:
        """A missing service account key surfaces as SheetSyncError."""
        mirror = SheetMirror(spreadsheet_id="abc", key_path=tmp_path / "missing.json")

        with pytest.raises(SheetSyncError, match="authentication failed"):
            mirror("guild-1", ROWS)

    @patch("export.push_latest")
    @patch("export.gspread.service_account")
    def test_client_created_once(
        self, mock_account: MagicMock, mock_push: MagicMock, tmp_path,
    ) -> None:
        """The gspread client is built lazily and reused."""
        key = tmp_path / "key.json"
        key.write_text("{}")
        mock_push.return_value = SheetSyncResult(ok=True, row_count=2)
        mirror = SheetMirror(spreadsheet_id="abc", key_path=key, tab="Latest")

        mirror("guild-1", ROWS)
        mirror("guild-1", ROWS)

        mock_account.assert_called_once_with(filename=str(key))
        mock_push.assert_called_with(mock_account.return_value, "abc", ROWS, "Latest")

    def test_get_sheets_client_missing_file(self, tmp_path) -> None:
        """get_sheets_client raises FileNotFoundError for a missing key."""
        with pytest.raises(FileNotFoundError):
            get_sheets_client(tmp_path / "nope.json")


# ---------------------------------------------------------------------------
# write_latest_csv
# ---------------------------------------------------------------------------

class TestWriteLatestCsv:
    """Tests for write_latest_csv()."""

    def test_writes_header_and_rows(self, tmp_path) -> None:
        """Every view column is written; None becomes an empty cell."""
        path = tmp_path / "out" / "latest.csv"

        count = write_latest_csv(ROWS, path)

        with path.open(newline="", encoding="utf-8") as handle:
            lines = list(csv.reader(handle))
        assert count == 2
        assert lines[0][0] == "display_name"
        assert lines[1] == ["Ana", "90000000", "150000000", "", "", "", "10.5"]
        assert lines[2][2] == "140000000"
