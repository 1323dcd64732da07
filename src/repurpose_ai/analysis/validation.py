"""Structural validation of raw capability output.

``validate_analysis`` checks, in order, and stops at the first violation:

1. ``keyMoments`` count in [3, 5]
2. per moment: ``0 <= startTime < endTime``
3. per moment: ``summary`` <= 500 chars, ``suggestedHook`` <= 200 chars
4. per moment: ``viralScore`` integer in [1, 10]
5. per moment: exactly 3 captions, type in {hook, value, emotion}, text <= 150
6. payload: ``overallSummary`` <= 1000 chars, ``totalDuration`` >= 0

Moments are checked one at a time (all of moment 0, then moment 1, ...).
Nothing is repaired. Caption types are NOT required to be distinct.
"""

import math
from typing import Any, Dict, Mapping, Optional

from ..errors import ValidationError
from .models import CaptionType, ValidatedAnalysis

MIN_MOMENTS = 3
MAX_MOMENTS = 5
SUMMARY_MAX = 500
HOOK_MAX = 200
CAPTION_TEXT_MAX = 150
CAPTIONS_PER_MOMENT = 3
SCORE_MIN = 1
SCORE_MAX = 10
OVERALL_SUMMARY_MAX = 1000

CAPTION_TYPES = frozenset(t.value for t in CaptionType)

# Accepted snake_case spellings of wire keys
_ALIASES = {
    "keyMoments": "key_moments",
    "startTime": "start_time",
    "endTime": "end_time",
    "suggestedHook": "suggested_hook",
    "viralScore": "viral_score",
    "overallSummary": "overall_summary",
    "totalDuration": "total_duration",
}

_MISSING = object()


def _get(data: Mapping[str, Any], key: str, default: Any = _MISSING) -> Any:
    if key in data:
        return data[key]
    alias = _ALIASES.get(key)
    if alias and alias in data:
        return data[alias]
    return default


def _is_number(value: Any) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # int too large for a float
        return False


def _require_text(moment: Mapping[str, Any], field: str, limit: int, index: int) -> str:
    value = _get(moment, field)
    if value is _MISSING or value is None:
        raise ValidationError(field, "is required", index)
    if not isinstance(value, str):
        raise ValidationError(field, f"must be a string, got {type(value).__name__}", index)
    if not value.strip():
        raise ValidationError(field, "must not be empty", index)
    if len(value) > limit:
        raise ValidationError(field, f"exceeds {limit} characters ({len(value)})", index)
    return value


def _check_times(moment: Mapping[str, Any], index: int) -> None:
    start = _get(moment, "startTime")
    end = _get(moment, "endTime")
    for field, value in (("startTime", start), ("endTime", end)):
        if value is _MISSING or value is None:
            raise ValidationError(field, "is required", index)
        if not _is_number(value):
            raise ValidationError(field, f"must be a finite number, got {value!r}", index)
    if start < 0:
        raise ValidationError("startTime", f"must be >= 0, got {start}", index)
    if end <= start:
        raise ValidationError("endTime", f"must be greater than startTime ({end} <= {start})", index)


def _check_score(moment: Mapping[str, Any], index: int) -> int:
    score = _get(moment, "viralScore")
    if score is _MISSING or score is None:
        raise ValidationError("viralScore", "is required", index)
    if isinstance(score, float) and _is_number(score) and score.is_integer():
        score = int(score)
    if not isinstance(score, int) or isinstance(score, bool):
        raise ValidationError("viralScore", f"must be an integer, got {score!r}", index)
    if not SCORE_MIN <= score <= SCORE_MAX:
        raise ValidationError(
            "viralScore", f"must be between {SCORE_MIN} and {SCORE_MAX}, got {score}", index
        )
    return score


def _check_captions(moment: Mapping[str, Any], index: int) -> None:
    captions = _get(moment, "captions")
    if captions is _MISSING or captions is None:
        raise ValidationError("captions", "is required", index)
    if not isinstance(captions, list):
        raise ValidationError("captions", "must be a list", index)
    if len(captions) != CAPTIONS_PER_MOMENT:
        raise ValidationError(
            "captions",
            f"must have exactly {CAPTIONS_PER_MOMENT} caption variants, got {len(captions)}",
            index,
        )

    for position, caption in enumerate(captions):
        field = f"captions[{position}]"
        if not isinstance(caption, Mapping):
            raise ValidationError(field, "must be an object", index)
        caption_type = caption.get("type")
        if caption_type not in CAPTION_TYPES:
            raise ValidationError(
                f"{field}.type",
                f"must be one of {sorted(CAPTION_TYPES)}, got {caption_type!r}",
                index,
            )
        text = caption.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValidationError(f"{field}.text", "must be a non-empty string", index)
        if len(text) > CAPTION_TEXT_MAX:
            raise ValidationError(
                f"{field}.text", f"exceeds {CAPTION_TEXT_MAX} characters ({len(text)})", index
            )


def _check_moment(moment: Any, index: int) -> None:
    if not isinstance(moment, Mapping):
        raise ValidationError("keyMoment", "must be an object", index)
    _check_times(moment, index)
    _require_text(moment, "summary", SUMMARY_MAX, index)
    _require_text(moment, "suggestedHook", HOOK_MAX, index)
    _check_score(moment, index)
    _check_captions(moment, index)


def _check_payload_fields(payload: Mapping[str, Any]) -> Dict[str, Optional[Any]]:
    overall = _get(payload, "overallSummary", None)
    if overall is not None:
        if not isinstance(overall, str):
            raise ValidationError("overallSummary", "must be a string")
        if len(overall) > OVERALL_SUMMARY_MAX:
            raise ValidationError(
                "overallSummary", f"exceeds {OVERALL_SUMMARY_MAX} characters ({len(overall)})"
            )

    total = _get(payload, "totalDuration", None)
    if total is not None:
        if not _is_number(total):
            raise ValidationError("totalDuration", f"must be a finite number, got {total!r}")
        if total < 0:
            raise ValidationError("totalDuration", f"must be >= 0, got {total}")

    return {"overall_summary": overall, "total_duration": total}


def validate_analysis(payload: Any) -> ValidatedAnalysis:
    """Validate raw capability output and return typed moments.

    Args:
        payload: Mapping produced by the analysis capability

    Returns:
        ValidatedAnalysis ready for commit

    Raises:
        ValidationError: First violated invariant, naming the field and the
            key moment index
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("payload", f"must be an object, got {type(payload).__name__}")

    moments = _get(payload, "keyMoments")
    if moments is _MISSING or moments is None:
        raise ValidationError("keyMoments", "is required")
    if not isinstance(moments, list):
        raise ValidationError("keyMoments", "must be a list")
    if not MIN_MOMENTS <= len(moments) <= MAX_MOMENTS:
        raise ValidationError(
            "keyMoments",
            f"must have between {MIN_MOMENTS} and {MAX_MOMENTS} key moments, got {len(moments)}",
        )

    for index, moment in enumerate(moments):
        _check_moment(moment, index)

    extras = _check_payload_fields(payload)

    return ValidatedAnalysis(
        key_moments=[
            {
                "start_time": _get(m, "startTime"),
                "end_time": _get(m, "endTime"),
                "summary": _get(m, "summary"),
                "suggested_hook": _get(m, "suggestedHook"),
                "viral_score": _check_score(m, i),
                "captions": [{"type": c["type"], "text": c["text"]} for c in m["captions"]],
            }
            for i, m in enumerate(moments)
        ],
        **extras,
    )
