"""Vision extraction of member rows from Manage Members screenshots.

Sends each screenshot to a vision oracle (Anthropic by default) with a fixed
prompt demanding strict JSON, then validates, parses, and deduplicates the
returned rows. In ensemble mode a fast and a strong model read the same image
concurrently and their values are reconciled digit by digit.

The oracle is any async callable ``(image_block, system_prompt, model) -> str``,
which keeps this module testable without network access.
"""

import asyncio
import base64
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import anthropic
import cv2
import numpy as np
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from config import (
    ENSEMBLE_DISAGREEMENT_CONFIDENCE,
    ENSEMBLE_ONLY_FAST_FACTOR,
    ENSEMBLE_ONLY_STRONG_FACTOR,
    ENSEMBLE_TIEBREAK,
    PARSE_WORKERS,
    POWER_MAX_DIGITS,
    POWER_MIN_DIGITS,
    RETRY_BASE_DELAY,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_JITTER,
    STRICT_UPSCALE_FACTOR,
    TRANSIENT_STATUS_CODES,
    VISION_FAST_MODEL,
    VISION_MAX_TOKENS,
    VISION_STRICT_MODEL,
    VISION_STRONG_MODEL,
)
from exceptions import OracleError, OracleFatal, OracleTransient
from models import Metric
from parse import canonicalize, page_median, parse_power

logger = logging.getLogger(__name__)

ImageRef = Union[str, Path, bytes]
OracleCall = Callable[[dict, str, str], Awaitable[str]]

SYSTEM_PROMPT = (
    'You read Super Snail "Manage Members" screens. Each member tile has a '
    'display name and either the label "Sim Power" or "Power" (total).\n'
    "Return pure JSON in this exact schema:\n"
    '{"metric":"sim"|"total","rows":[{"name":string,"value":integer,"confidence":number}]}\n'
    '- "metric" must be "sim" or "total" inferred from the on-screen label.\n'
    '- "value" is an integer. Strip commas, dots, spaces, and other formatting.\n'
    '- "confidence" is between 0 and 1 describing your certainty the value is correct.\n'
    "- Ignore tiles without a numeric value."
)

STRICT_SYSTEM_PROMPT = (
    'You perform OCR on Super Snail "Manage Members" screens. Focus on precision.\n'
    'Return ONLY JSON with schema {"metric":"sim"|"total","rows":[{"name":string,'
    '"value":integer,"confidence":number}]}.\n'
    "Re-check every digit carefully. If unclear, omit the row rather than guessing."
)

USER_PROMPT = "Extract every member name and power value visible in this screenshot."


@dataclass(frozen=True)
class ExtractedRow:
    canonical_key: str
    display_name: str
    value: int
    confidence: float
    disagreement_positions: tuple[int, ...] = ()


@dataclass
class EnsembleStats:
    """Counts of how the two ensemble models agreed, per image or per session."""

    total_members: int = 0
    both_models: int = 0
    only_strong: int = 0
    only_fast: int = 0
    disagreements: int = 0

    def merge(self, other: "EnsembleStats") -> None:
        self.total_members += other.total_members
        self.both_models += other.both_models
        self.only_strong += other.only_strong
        self.only_fast += other.only_fast
        self.disagreements += other.disagreements


@dataclass
class ExtractionResult:
    metric: Metric
    rows: list[ExtractedRow] = field(default_factory=list)
    ensemble: Optional[EnsembleStats] = None


@dataclass(frozen=True)
class DigitReconciliation:
    """Digit-level merge of two readings.

    Attributes:
        value: The reconciled integer.
        disagreements: Positions (0 = ones digit) where the readings differed.
    """

    value: int
    disagreements: tuple[int, ...] = ()

    @property
    def has_disagreement(self) -> bool:
        return bool(self.disagreements)


# ---------------------------------------------------------------------------
# Response handling
# ---------------------------------------------------------------------------


def strip_code_fence(text: str) -> str:
    """Remove a surrounding Markdown code fence (```json ... ```) if present."""
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        cleaned = cleaned[first_newline + 1:] if first_newline >= 0 else cleaned[3:]
        if cleaned.endswith("```"):
            cleaned = cleaned[:-3]
    return cleaned.strip()


def clamp_confidence(value: Any) -> float:
    """Coerce *value* into [0, 1], rounded to 3 decimals; junk becomes 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number or number <= 0:
        return 0.0
    if number >= 1:
        return 1.0
    return round(number, 3)


def parse_oracle_response(raw: str) -> dict[str, Any]:
    """Decode and schema-check an oracle response.

    Returns:
        The decoded object with a ``rows`` list.

    Raises:
        OracleFatal: ``invalid-response`` for non-JSON or schema violations.
    """
    try:
        payload = json.loads(strip_code_fence(raw))
    except json.JSONDecodeError as exc:
        raise OracleFatal("invalid-response", f"not JSON: {exc}", raw) from exc
    if not isinstance(payload, dict):
        raise OracleFatal("invalid-response", "top level is not an object", raw)
    rows = payload.get("rows")
    if not isinstance(rows, list):
        raise OracleFatal("invalid-response", "'rows' is not a list", raw)
    if any(not isinstance(row, dict) for row in rows):
        raise OracleFatal("invalid-response", "row is not an object", raw)
    return payload


def resolve_metric(payload: dict[str, Any], forced: Optional[Metric]) -> Metric:
    """A forced metric wins; otherwise use the oracle's label.

    Raises:
        OracleFatal: ``missing-metric`` when neither is available.
    """
    if forced is not None:
        return forced
    label = payload.get("metric")
    if isinstance(label, str) and label.lower() in (Metric.SIM.value, Metric.TOTAL.value):
        return Metric(label.lower())
    raise OracleFatal("missing-metric", "unable to determine metric for screenshot")


def _plausible_number(value: int) -> bool:
    return POWER_MIN_DIGITS <= len(str(value)) <= POWER_MAX_DIGITS


def build_rows(raw_rows: Sequence[dict[str, Any]]) -> list[ExtractedRow]:
    """Parse, validate, and deduplicate oracle rows.

    Values are parsed twice: once to find the page median, then again with
    that median so implausible defective readings are rejected. Duplicate
    canonical keys keep the higher value (with its display name) and the
    higher confidence.
    """
    first_pass = [parse_power(row.get("value")).value for row in raw_rows]
    median = page_median(first_pass)

    deduped: dict[str, ExtractedRow] = {}
    for row in raw_rows:
        display = str(row.get("name") or "").strip()
        key = canonicalize(display)
        if not key:
            logger.debug("Dropping row without usable name: %r", row)
            continue

        raw_value = row.get("value")
        result = parse_power(raw_value, page_median=median)
        if not result.ok:
            logger.debug("Dropping '%s': %r (%s)", key, raw_value, result.reason)
            continue
        if isinstance(raw_value, (int, float)) and not _plausible_number(result.value):
            logger.debug("Dropping '%s': %r outside plausible range", key, raw_value)
            continue

        confidence = clamp_confidence(row.get("confidence", 0))
        existing = deduped.get(key)
        if existing is None:
            deduped[key] = ExtractedRow(key, display or key, result.value, confidence)
            continue
        if result.value > existing.value:
            existing = ExtractedRow(key, display or existing.display_name, result.value, existing.confidence)
        deduped[key] = ExtractedRow(
            key,
            existing.display_name,
            existing.value,
            max(existing.confidence, confidence),
        )
    return list(deduped.values())


# ---------------------------------------------------------------------------
# Ensemble reconciliation
# ---------------------------------------------------------------------------


def reconcile_digits(
    fast_value: int,
    strong_value: int,
    prefer: str = ENSEMBLE_TIEBREAK,
) -> DigitReconciliation:
    """Merge two readings digit by digit, right-aligned and zero-padded.

    Agreeing digits are kept. On disagreement the *prefer* model's digit
    wins and the position is recorded.

    Args:
        fast_value: Reading from the fast model.
        strong_value: Reading from the strong model.
        prefer: ``"strong"`` or ``"fast"``.

    Returns:
        The reconciled value and the disagreeing positions (0 = ones digit).
    """
    fast_digits = str(fast_value)
    strong_digits = str(strong_value)
    width = max(len(fast_digits), len(strong_digits))
    fast_digits = fast_digits.zfill(width)
    strong_digits = strong_digits.zfill(width)

    merged = []
    disagreements = []
    for index, (fast_digit, strong_digit) in enumerate(zip(fast_digits, strong_digits)):
        if fast_digit == strong_digit:
            merged.append(strong_digit)
            continue
        disagreements.append(width - 1 - index)
        merged.append(fast_digit if prefer == "fast" else strong_digit)

    return DigitReconciliation(int("".join(merged)), tuple(sorted(disagreements)))


def merge_ensemble(
    fast_rows: Sequence[ExtractedRow],
    strong_rows: Sequence[ExtractedRow],
    prefer: str = ENSEMBLE_TIEBREAK,
) -> tuple[list[ExtractedRow], EnsembleStats]:
    """Combine two models' rows for the same image."""
    fast_by_key = {row.canonical_key: row for row in fast_rows}
    strong_by_key = {row.canonical_key: row for row in strong_rows}
    stats = EnsembleStats()
    merged: list[ExtractedRow] = []

    for key in list(strong_by_key) + [k for k in fast_by_key if k not in strong_by_key]:
        fast = fast_by_key.get(key)
        strong = strong_by_key.get(key)
        stats.total_members += 1

        if fast is None:
            stats.only_strong += 1
            merged.append(_discounted(strong, ENSEMBLE_ONLY_STRONG_FACTOR))
            continue
        if strong is None:
            stats.only_fast += 1
            merged.append(_discounted(fast, ENSEMBLE_ONLY_FAST_FACTOR))
            continue

        stats.both_models += 1
        reconciled = reconcile_digits(fast.value, strong.value, prefer)
        confidence = max(fast.confidence, strong.confidence)
        if reconciled.has_disagreement:
            stats.disagreements += 1
            confidence = min(confidence, ENSEMBLE_DISAGREEMENT_CONFIDENCE)
            logger.debug(
                "Digit disagreement for '%s': fast=%d strong=%d -> %d",
                key, fast.value, strong.value, reconciled.value,
            )
        merged.append(
            ExtractedRow(
                key,
                strong.display_name,
                reconciled.value,
                round(confidence, 3),
                reconciled.disagreements,
            )
        )
    return merged, stats


def _discounted(row: ExtractedRow, factor: float) -> ExtractedRow:
    return ExtractedRow(
        row.canonical_key,
        row.display_name,
        row.value,
        round(row.confidence * factor, 3),
        row.disagreement_positions,
    )


# ---------------------------------------------------------------------------
# Image payloads
# ---------------------------------------------------------------------------


def sharpen_for_ocr(image: np.ndarray, factor: float = STRICT_UPSCALE_FACTOR) -> np.ndarray:
    """Upscale with bicubic interpolation and apply an unsharp mask."""
    upscaled = cv2.resize(image, None, fx=factor, fy=factor, interpolation=cv2.INTER_CUBIC)
    blurred = cv2.GaussianBlur(upscaled, (0, 0), 3)
    return cv2.addWeighted(upscaled, 1.5, blurred, -0.5, 0)


def load_image_block(ref: ImageRef, strict: bool = False) -> dict[str, Any]:
    """Build an oracle image content block from a URL, file path, or raw bytes.

    Remote URLs are passed through untouched. Local images are decoded with
    OpenCV (sharpened first in strict mode) and sent as base64 PNG.

    Raises:
        FileNotFoundError: If a local path does not exist.
        OracleFatal: ``unreadable-image`` if the bytes are not an image.
    """
    if isinstance(ref, str) and ref.startswith(("http://", "https://")):
        return {"type": "image", "source": {"type": "url", "url": ref}}

    data = ref if isinstance(ref, bytes) else Path(ref).read_bytes()
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise OracleFatal("unreadable-image", f"could not decode {describe_ref(ref)}")
    if strict:
        image = sharpen_for_ocr(image)

    ok, encoded = cv2.imencode(".png", image)
    if not ok:
        raise OracleFatal("unreadable-image", f"could not encode {describe_ref(ref)}")
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": "image/png",
            "data": base64.standard_b64encode(encoded.tobytes()).decode("ascii"),
        },
    }


def describe_ref(ref: ImageRef) -> str:
    if isinstance(ref, bytes):
        return f"<{len(ref)} bytes>"
    return str(ref)


# ---------------------------------------------------------------------------
# Oracle client and retry policy
# ---------------------------------------------------------------------------


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception()
    logger.warning(
        "Transient oracle failure (%s); retry %d in %.2fs",
        getattr(exc, "status_code", None), state.attempt_number, state.next_action.sleep,
    )


async def retry_transient(
    call: Callable[[], Awaitable[str]],
    max_attempts: int = RETRY_MAX_ATTEMPTS,
    base_delay: float = RETRY_BASE_DELAY,
    max_jitter: float = RETRY_MAX_JITTER,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Await *call*, retrying ``OracleTransient`` with jittered backoff.

    Waits ``base_delay * 2**(attempt - 1)`` plus up to *max_jitter* seconds
    between attempts. Every other exception propagates immediately.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(OracleTransient),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay) + wait_random(0, max_jitter),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                raw = await call()
    except OracleTransient as exc:
        logger.error("Oracle still failing after %d attempts: %s", max_attempts, exc)
        raise
    return raw


class AnthropicOracle:
    """Vision oracle backed by ``anthropic.AsyncAnthropic``.

    Args:
        client: An ``AsyncAnthropic`` instance; one is created from the
            environment (``ANTHROPIC_API_KEY``) if omitted.
        max_tokens: Response token ceiling.
    """

    def __init__(
        self,
        client: Optional[anthropic.AsyncAnthropic] = None,
        max_tokens: int = VISION_MAX_TOKENS,
    ) -> None:
        self.client = client or anthropic.AsyncAnthropic()
        self.max_tokens = max_tokens

    async def __call__(self, image_block: dict, system_prompt: str, model: str) -> str:
        try:
            message = await self.client.messages.create(
                model=model,
                max_tokens=self.max_tokens,
                temperature=0,
                system=system_prompt,
                messages=[
                    {
                        "role": "user",
                        "content": [image_block, {"type": "text", "text": USER_PROMPT}],
                    }
                ],
            )
        except anthropic.APIStatusError as exc:
            if exc.status_code in TRANSIENT_STATUS_CODES:
                raise OracleTransient(str(exc), exc.status_code) from exc
            raise OracleFatal("api-error", f"{exc.status_code}: {exc}") from exc
        except anthropic.APIConnectionError as exc:
            raise OracleTransient(str(exc)) from exc

        return "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        )


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class VisionExtractor:
    """Turn screenshots into validated ``ExtractedRow`` lists.

    Args:
        oracle: Async callable ``(image_block, system_prompt, model) -> str``.
        use_ensemble: Read every image with both the fast and strong models.
        tiebreak: Which ensemble model wins a digit disagreement.
        workers: Maximum oracle calls in flight during ``extract_many``,
            counting both ensemble legs.
    """

    def __init__(
        self,
        oracle: OracleCall,
        use_ensemble: bool = False,
        fast_model: str = VISION_FAST_MODEL,
        strong_model: str = VISION_STRONG_MODEL,
        strict_model: str = VISION_STRICT_MODEL,
        tiebreak: str = ENSEMBLE_TIEBREAK,
        workers: int = PARSE_WORKERS,
    ) -> None:
        self.oracle = oracle
        self.use_ensemble = use_ensemble
        self.fast_model = fast_model
        self.strong_model = strong_model
        self.strict_model = strict_model
        self.tiebreak = tiebreak
        self.workers = workers

    async def _read(
        self,
        block: dict,
        prompt: str,
        model: str,
        forced_metric: Optional[Metric],
        limiter: Optional[asyncio.Semaphore] = None,
    ) -> ExtractionResult:
        async def call() -> str:
            async with limiter or contextlib.nullcontext():
                return await self.oracle(block, prompt, model)

        raw = await retry_transient(call)
        payload = parse_oracle_response(raw)
        metric = resolve_metric(payload, forced_metric)
        return ExtractionResult(metric, build_rows(payload["rows"]))

    async def extract(
        self,
        ref: ImageRef,
        forced_metric: Optional[Metric] = None,
        strict: bool = False,
        limiter: Optional[asyncio.Semaphore] = None,
    ) -> ExtractionResult:
        """Read one screenshot with a single model.

        Strict mode sharpens the image and uses the strict prompt and model.
        *limiter*, when given, bounds the oracle call.

        Raises:
            OracleFatal: On unusable responses or non-retryable API errors.
            OracleTransient: If retries are exhausted.
        """
        block = load_image_block(ref, strict=strict)
        prompt = STRICT_SYSTEM_PROMPT if strict else SYSTEM_PROMPT
        model = self.strict_model if strict else self.strong_model
        result = await self._read(block, prompt, model, forced_metric, limiter)
        logger.info(
            "Extracted %d %s rows from %s%s",
            len(result.rows), result.metric.value, describe_ref(ref), " (strict)" if strict else "",
        )
        return result

    async def extract_ensemble(
        self,
        ref: ImageRef,
        forced_metric: Optional[Metric] = None,
        limiter: Optional[asyncio.Semaphore] = None,
    ) -> ExtractionResult:
        """Read one screenshot with the fast and strong models concurrently.

        If one model fails, the other's rows are used with that model's
        single-source discount. If both fail, the strong model's error is
        raised.
        """
        block = load_image_block(ref)
        fast, strong = await asyncio.gather(
            self._read(block, SYSTEM_PROMPT, self.fast_model, forced_metric, limiter),
            self._read(block, SYSTEM_PROMPT, self.strong_model, forced_metric, limiter),
            return_exceptions=True,
        )
        for outcome in (fast, strong):
            if isinstance(outcome, Exception) and not isinstance(outcome, OracleError):
                raise outcome

        if isinstance(fast, Exception) and isinstance(strong, Exception):
            logger.error("Both ensemble models failed for %s", describe_ref(ref))
            raise strong
        if isinstance(strong, Exception):
            logger.warning("Strong model failed for %s: %s", describe_ref(ref), strong)
            strong = ExtractionResult(fast.metric)
        if isinstance(fast, Exception):
            logger.warning("Fast model failed for %s: %s", describe_ref(ref), fast)
            fast = ExtractionResult(strong.metric)

        metric = forced_metric or strong.metric
        if not strong.rows and fast.rows:
            metric = forced_metric or fast.metric
        rows, stats = merge_ensemble(fast.rows, strong.rows, self.tiebreak)
        logger.info(
            "Ensemble read %s: %d members (%d both, %d disagreements)",
            describe_ref(ref), stats.total_members, stats.both_models, stats.disagreements,
        )
        return ExtractionResult(metric, rows, stats)

    async def extract_many(
        self,
        refs: Sequence[ImageRef],
        forced_metric: Optional[Metric] = None,
        strict: bool = False,
    ) -> list[Union[ExtractionResult, OracleError]]:
        """Read several screenshots with at most ``workers`` oracle calls in flight.

        Oracle failures are returned in place of the result for that image so
        the remaining images still count; results keep input order.
        """
        limiter = asyncio.Semaphore(max(1, self.workers))

        async def one(ref: ImageRef) -> Union[ExtractionResult, OracleError]:
            try:
                if self.use_ensemble and not strict:
                    return await self.extract_ensemble(ref, forced_metric, limiter)
                return await self.extract(ref, forced_metric, strict=strict, limiter=limiter)
            except OracleError as exc:
                logger.warning("Extraction failed for %s: %s", describe_ref(ref), exc)
                return exc

        return list(await asyncio.gather(*(one(ref) for ref in refs)))
