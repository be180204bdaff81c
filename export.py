"""Mirror of the latest view to Google Sheets via gspread, plus CSV export.

The sheet is a downstream copy: the database stays the source of truth and a
failed push never undoes a commit. Writes use
``value_input_option="USER_ENTERED"`` so numbers land as numbers.
"""

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

import gspread
import requests
from google.auth.exceptions import GoogleAuthError

from config import (
    SERVICE_ACCOUNT_KEY_PATH,
    SHEET_HEADER,
    SHEET_LATEST_RANGE,
    SHEET_LATEST_TAB,
    SHEET_NEW_TAB_COLS,
    SHEET_NEW_TAB_ROWS,
    SPREADSHEET_ID,
)
from exceptions import SheetSyncError

logger = logging.getLogger(__name__)

CSV_COLUMNS: tuple[str, ...] = (
    "display_name",
    "sim_power",
    "total_power",
    "sim_prev",
    "total_prev",
    "sim_pct_change",
    "total_pct_change",
)


@dataclass(frozen=True)
class SheetSyncResult:
    ok: bool
    row_count: int = 0
    sheet_name: Optional[str] = None
    sheet_url: Optional[str] = None
    error: Optional[str] = None


def get_sheets_client(key_path: Union[str, Path] = SERVICE_ACCOUNT_KEY_PATH) -> gspread.Client:
    """Authenticate with Google Sheets using the service account key.

    Returns:
        An authorized ``gspread.Client``.

    Raises:
        FileNotFoundError: If the service account key file does not exist.
        google.auth.exceptions.GoogleAuthError: If the key is invalid.
    """
    key_path = Path(key_path)
    if not key_path.is_file():
        raise FileNotFoundError(f"Service account key not found: {key_path}")
    return gspread.service_account(filename=str(key_path))


def _cell(value: Optional[Union[int, float]]) -> Union[int, float, str]:
    return "" if value is None else value


def build_latest_values(rows: Sequence) -> list[list]:
    """Build the header plus one row per member for the latest tab.

    Args:
        rows: ``LatestMember`` records, already in display order.

    Returns:
        Name, SIM power, total power, and total percent change per member.
    """
    values: list[list] = [list(SHEET_HEADER)]
    for row in rows:
        values.append(
            [
                row.display_name,
                _cell(row.sim_power),
                _cell(row.total_power),
                _cell(row.total_pct_change),
            ]
        )
    return values


def ensure_worksheet(spreadsheet: gspread.Spreadsheet, tab: str) -> gspread.Worksheet:
    """Return the tab named *tab*, creating it if it does not exist yet."""
    try:
        return spreadsheet.worksheet(tab)
    except gspread.exceptions.WorksheetNotFound:
        logger.info("Creating worksheet '%s'", tab)
        return spreadsheet.add_worksheet(
            title=tab, rows=SHEET_NEW_TAB_ROWS, cols=SHEET_NEW_TAB_COLS
        )


def push_latest(
    client: gspread.Client,
    spreadsheet_id: str,
    rows: Sequence,
    tab: str = SHEET_LATEST_TAB,
) -> SheetSyncResult:
    """Overwrite the latest tab with *rows*.

    Clears ``SHEET_LATEST_RANGE`` first so members who left do not linger.

    Raises:
        SheetSyncError: On any Sheets API, token refresh, or transport
            failure. A 403 carries a hint to share the spreadsheet with the
            service account.
    """
    values = build_latest_values(rows)
    try:
        spreadsheet = client.open_by_key(spreadsheet_id)
        worksheet = ensure_worksheet(spreadsheet, tab)
        worksheet.batch_clear([SHEET_LATEST_RANGE])
        worksheet.update(values=values, range_name="A1", value_input_option="USER_ENTERED")
    except gspread.exceptions.SpreadsheetNotFound as exc:
        raise SheetSyncError(f"Spreadsheet '{spreadsheet_id}' not found", 404) from exc
    except gspread.exceptions.APIError as exc:
        status = getattr(exc.response, "status_code", None)
        message = f"Sheets API error ({status}): {exc}"
        if status == 403:
            message += " Share the spreadsheet with the service account email as an editor."
        raise SheetSyncError(message, status) from exc
    except GoogleAuthError as exc:
        raise SheetSyncError(f"Sheets authentication failed: {exc}") from exc
    except requests.exceptions.RequestException as exc:
        raise SheetSyncError(f"Sheets request failed: {exc}") from exc

    logger.info("Pushed %d rows to '%s'", len(rows), tab)
    return SheetSyncResult(
        ok=True,
        row_count=len(rows),
        sheet_name=tab,
        sheet_url=getattr(spreadsheet, "url", None),
    )


class SheetMirror:
    """Post-commit hook that mirrors a guild's latest view to a spreadsheet.

    The client is created lazily on first use.
    """

    def __init__(
        self,
        spreadsheet_id: str = SPREADSHEET_ID,
        client: Optional[gspread.Client] = None,
        key_path: Union[str, Path] = SERVICE_ACCOUNT_KEY_PATH,
        tab: str = SHEET_LATEST_TAB,
    ) -> None:
        self.spreadsheet_id = spreadsheet_id
        self.client = client
        self.key_path = key_path
        self.tab = tab

    def __call__(self, guild_id: str, rows: Sequence) -> SheetSyncResult:
        if not self.spreadsheet_id:
            raise SheetSyncError("No spreadsheet configured (set ROSTER_SPREADSHEET_ID)")
        if self.client is None:
            try:
                self.client = get_sheets_client(self.key_path)
            except (OSError, ValueError, GoogleAuthError) as exc:
                raise SheetSyncError(f"Sheets authentication failed: {exc}") from exc
        logger.debug("Mirroring %d latest rows for guild %s", len(rows), guild_id)
        return push_latest(self.client, self.spreadsheet_id, rows, self.tab)


def write_latest_csv(rows: Sequence, path: Union[str, Path]) -> int:
    """Write the latest view to *path* as CSV; return the number of data rows."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(CSV_COLUMNS)
        for row in rows:
            writer.writerow(
                ["" if getattr(row, column) is None else getattr(row, column) for column in CSV_COLUMNS]
            )
    logger.info("Wrote %d rows to %s", len(rows), path)
    return len(rows)
