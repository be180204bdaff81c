"""Power value parsing and member name canonicalization.

Handles all text-to-data conversion for OCR output: digit correction,
suffix notation, anti-inflation heuristics against misread separators and
doubled trailing digits, and the canonical lookup key used to match member
names across screenshots. Both entry points are pure and never raise.
"""

import logging
import math
import re
import statistics
import unicodedata
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Union

from config import (
    OUTLIER_MEDIAN_RATIO,
    POWER_MAX_DIGITS,
    POWER_MIN_DIGITS,
    SUFFIX_MULTIPLIERS,
    TRAILING_DIGIT_MIN_LENGTH,
)
from exceptions import OutlierRejected, ParseFailure

logger = logging.getLogger(__name__)

_SUFFIX_RE = re.compile(r"^([0-9]+(?:\.[0-9]+)?)\s*([KMB])$", re.IGNORECASE)
_SEPARATORS_RE = re.compile(r"[,.\s]")
_INVISIBLE_RE = re.compile("[\u00a0\u2000-\u200b\u202f\u205f\u3000]")
_DIGITS_RE = re.compile(rf"^[0-9]{{{POWER_MIN_DIGITS},{POWER_MAX_DIGITS}}}$")

_CUSTOM_EMOJI_RE = re.compile(r"<a?:[^:>]+:\d+>")
_SQUARE_TAG_RE = re.compile(r"\[[^\]]+\]")
_SHORTCODE_RE = re.compile(r":[^:\s]+:")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ParseResult:
    """Outcome of ``parse_power``.

    Attributes:
        value: The parsed integer, or ``None`` when the input was rejected.
        corrected: ``True`` if an anti-inflation correction changed the value.
        reason: Why the value was corrected or rejected, if it was.
    """

    value: Optional[int]
    corrected: bool = False
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None

    def unwrap(self, raw: object = None) -> int:
        """Return the value or raise the matching parse exception.

        Raises:
            OutlierRejected: If the value was rejected by the median check.
            ParseFailure: For every other rejection.
        """
        if self.value is not None:
            return self.value
        if self.reason == "outlier":
            raise OutlierRejected(raw)
        raise ParseFailure(raw, self.reason or "parse-failed")


# ---------------------------------------------------------------------------
# Numeric parser
# ---------------------------------------------------------------------------


def normalize_ocr(raw: object) -> str:
    """Apply digit correction and unicode cleanup to raw OCR text.

    ``O`` -> ``0`` and ``l``/``I`` -> ``1``; zero-width and non-breaking
    spaces are removed; CJK comma and full stop become ASCII.
    """
    if raw is None:
        return ""
    text = str(raw).strip()
    text = text.replace("O", "0").replace("o", "0")
    text = text.replace("l", "1").replace("I", "1")
    text = _INVISIBLE_RE.sub("", text)
    return text.replace("\uff0c", ",").replace("\u3002", ".")


def _parse_suffix(text: str) -> Optional[int]:
    match = _SUFFIX_RE.match(text)
    if not match:
        return None
    multiplier = SUFFIX_MULTIPLIERS[match.group(2).upper()]
    return math.floor(Decimal(match.group(1)) * multiplier)


def _parse_grouped(text: str) -> Optional[int]:
    cleaned = _SEPARATORS_RE.sub("", text)
    if not _DIGITS_RE.match(cleaned):
        return None
    return int(cleaned)


def has_bad_grouping(text: str) -> bool:
    """Return ``True`` if any comma group after the first is not 3 digits."""
    groups = text.split(",")
    if len(groups) < 2:
        return False
    return any(len(group) != 3 for group in groups[1:])


def has_trailing_extra_digit(value: int) -> bool:
    """Return ``True`` if *value* looks like it picked up a doubled last digit.

    Only values with at least ``TRAILING_DIGIT_MIN_LENGTH`` digits qualify;
    the last two digits must be equal (which covers ``00`` and ``88``).
    """
    digits = str(value)
    if len(digits) < TRAILING_DIGIT_MIN_LENGTH:
        return False
    return digits[-1] == digits[-2]


def _apply_anti_inflation(value: int, text: str) -> ParseResult:
    if has_bad_grouping(text):
        last_group = text.split(",")[-1]
        if len(last_group) == 4:
            # "1,234,5678" -> "1,234,567"
            fixed = _parse_grouped(text[:-1])
            if fixed is not None and fixed < value:
                return ParseResult(fixed, corrected=True, reason="bad-grouping")

    if has_trailing_extra_digit(value):
        return ParseResult(value // 10, corrected=True, reason="trailing-extra-digit")

    return ParseResult(value)


def parse_power(
    raw: Union[str, int, float, None],
    page_median: Optional[float] = None,
    allow_outliers: bool = False,
    trusted: bool = False,
) -> ParseResult:
    """Parse a power value from OCR text or user input.

    Tries suffix notation (``"10.1B"``, ``"325M"``) first, then grouped or
    plain digits (6-12 digits once separators are stripped). Grouped values
    go through anti-inflation correction unless *trusted* is set.

    When *page_median* is given and *allow_outliers* is ``False``, a value
    whose pre-correction ratio to the median exceeds
    ``OUTLIER_MEDIAN_RATIO`` is rejected as an outlier, but only if it also
    shows a correctable defect. Plausible-looking values without a defect
    are never caught by this check.

    Args:
        raw: Raw input, either text from OCR / a user or a number.
        page_median: Median value of the other rows on the same screenshot.
        allow_outliers: Skip the median-based rejection.
        trusted: Skip anti-inflation correction (manual entries).

    Returns:
        A ``ParseResult``; ``value`` is ``None`` when the input is rejected.
    """
    if isinstance(raw, bool):
        return ParseResult(None, reason="parse-failed")
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            return ParseResult(None, reason="non-finite")
        if raw < 0:
            return ParseResult(None, reason="negative")
        return ParseResult(math.floor(raw))

    text = normalize_ocr(raw)
    if not text:
        return ParseResult(None, reason="empty-input")

    suffixed = _parse_suffix(text)
    if suffixed is not None:
        return ParseResult(suffixed)

    value = _parse_grouped(text)
    if value is None:
        return ParseResult(None, reason="parse-failed")
    if trusted:
        return ParseResult(value)

    if page_median and page_median > 0 and not allow_outliers:
        if value / page_median > OUTLIER_MEDIAN_RATIO and (
            has_bad_grouping(text) or has_trailing_extra_digit(value)
        ):
            logger.debug(
                "Rejecting %r as outlier (median=%.0f)", raw, page_median
            )
            return ParseResult(None, reason="outlier")

    result = _apply_anti_inflation(value, text)
    if result.corrected:
        logger.debug("Corrected %r -> %d (%s)", raw, result.value, result.reason)
    return result


def page_median(values: Iterable[Optional[int]]) -> Optional[float]:
    """Return the median of the non-null values, or ``None`` if there are none."""
    present = [v for v in values if v is not None]
    if not present:
        return None
    return float(statistics.median(present))


# ---------------------------------------------------------------------------
# Canonicalizer
# ---------------------------------------------------------------------------


def canonicalize(name: Optional[str]) -> str:
    """Reduce a display name to its canonical lookup key.

    Strips custom-emoji markup (``<:name:id>``), bracketed tags
    (``[Officer]``), colon shortcodes (``:snail:``), emoji and other symbols,
    and diacritics; collapses every non-letter/non-digit run to one space,
    lowercases, and trims. Idempotent.

    Args:
        name: A member display name as seen on screen or typed by a user.

    Returns:
        The canonical key; empty if nothing letter- or digit-like remains.
    """
    if not name:
        return ""
    text = unicodedata.normalize("NFKD", str(name))
    text = _CUSTOM_EMOJI_RE.sub(" ", text)
    text = _SQUARE_TAG_RE.sub(" ", text)
    text = _SHORTCODE_RE.sub(" ", text)
    text = unicodedata.normalize("NFKD", text.casefold())

    kept = []
    for char in text:
        category = unicodedata.category(char)
        if category == "Mn":
            continue
        kept.append(char if category[0] in ("L", "N") else " ")

    return _WHITESPACE_RE.sub(" ", "".join(kept)).strip()


# ---------------------------------------------------------------------------
# Manual fix lines
# ---------------------------------------------------------------------------

_MANUAL_WITH_METRIC_RE = re.compile(
    r"^(.+?),\s*(sim|total)\s*=\s*([0-9][0-9,.\s]*[KMB]?)$", re.IGNORECASE
)
_MANUAL_PLAIN_RE = re.compile(r"^(.+?)\s*=\s*([0-9][0-9,.\s]*[KMB]?)$", re.IGNORECASE)


@dataclass(frozen=True)
class ManualLine:
    """One parsed ``Name = value`` or ``Name, metric=value`` correction."""

    name: str
    metric: Optional[str]
    raw_value: str


def parse_manual_line(line: str) -> Optional[ManualLine]:
    """Split a manual correction line into name, optional metric and value.

    Returns ``None`` for lines that match neither accepted form. The value is
    returned as text; callers feed it to ``parse_power(..., trusted=True)``.
    """
    text = line.strip()
    match = _MANUAL_WITH_METRIC_RE.match(text)
    if match:
        return ManualLine(
            name=match.group(1).strip(),
            metric=match.group(2).lower(),
            raw_value=match.group(3).strip(),
        )
    match = _MANUAL_PLAIN_RE.match(text)
    if match:
        return ManualLine(name=match.group(1).strip(), metric=None, raw_value=match.group(2).strip())
    return None
