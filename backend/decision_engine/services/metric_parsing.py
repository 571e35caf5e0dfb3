"""
Parsing of the free-text metric ranges that scenario generators produce.

Examples of accepted input:
    "+15–25%"        -> (15.0, 25.0)
    "-5-10%"         -> (-5.0, 10.0)
    "+8%"            -> (8.0, 8.0)
    "Stagnates"      -> (0.0, 0.0)
    "30-60 days"     -> (30, 60)
"""
import re
from typing import Optional, Tuple

from ..models.db_models import DeltaDirection

# Separator may be a hyphen, an en dash or a unicode minus
RANGE_PATTERN = re.compile(r"([+\-−]?\d+\.?\d*)\s*[–\-−]\s*(\d+\.?\d*)")
SINGLE_PATTERN = re.compile(r"([+\-−]?\d+\.?\d*)")
DAY_RANGE_PATTERN = re.compile(r"(\d+)\s*[–\-−]\s*(\d+)")
DAY_SINGLE_PATTERN = re.compile(r"(\d+)")

EMPTY_MARKERS = {"", "stagnates", "n/a"}

LEVEL_ORDER = {"low": 1, "medium": 2, "high": 3}


def _to_float(token: str) -> float:
    return float(token.replace("−", "-"))


def parse_percent_range(text: Optional[str]) -> Tuple[float, float]:
    """Extract (min, max) from a percent or percentage-point range."""
    text = (text or "").strip()
    if text.lower() in EMPTY_MARKERS:
        return 0.0, 0.0

    match = RANGE_PATTERN.search(text)
    if match:
        return _to_float(match.group(1)), _to_float(match.group(2))

    match = SINGLE_PATTERN.search(text)
    if match:
        value = _to_float(match.group(1))
        return value, value

    return 0.0, 0.0


def parse_day_range(text: Optional[str]) -> Tuple[int, int]:
    """Extract (min, max) days from a time-to-impact string."""
    text = (text or "").strip()
    if text.lower() in EMPTY_MARKERS:
        return 0, 0

    match = DAY_RANGE_PATTERN.search(text)
    if match:
        return int(match.group(1)), int(match.group(2))

    match = DAY_SINGLE_PATTERN.search(text)
    if match:
        value = int(match.group(1))
        return value, value

    return 0, 0


def midpoint_days(text: Optional[str], default: int) -> int:
    """Midpoint of a time-to-impact range, or `default` when none is given."""
    low, high = parse_day_range(text)
    if low == 0 and high == 0:
        return default
    return (low + high) // 2


def compare_level(baseline: Optional[str], candidate: Optional[str]) -> DeltaDirection:
    """
    Direction of a low/medium/high label moving from baseline to candidate.
    An unrecognized label on either side yields SAME.
    """
    base = LEVEL_ORDER.get((baseline or "").strip().lower())
    cand = LEVEL_ORDER.get((candidate or "").strip().lower())
    if base is None or cand is None:
        return DeltaDirection.SAME
    if cand > base:
        return DeltaDirection.UP
    if cand < base:
        return DeltaDirection.DOWN
    return DeltaDirection.SAME
