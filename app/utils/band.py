"""
IELTS band helpers
"""

from typing import Any, Dict, Optional

DEFAULT_BAND = 6.0
CRITERIA = ("fluency_coherence", "lexical_resource", "grammatical_range", "pronunciation")


def round_to_half(value: float) -> float:
    return round(value * 2) / 2


def clamp_band(value: float) -> float:
    return max(0.0, min(9.0, value))


def calculate_band(result: Dict[str, Any]) -> float:
    """Mean of the four criterion bands rounded to the nearest half band"""
    criteria = result.get("criteria") or {}
    scores = []
    for name in CRITERIA:
        band = (criteria.get(name) or {}).get("band")
        if isinstance(band, (int, float)) and not isinstance(band, bool):
            scores.append(float(band))
    if not scores:
        return DEFAULT_BAND
    return clamp_band(round_to_half(sum(scores) / len(scores)))


def overall_band(result: Dict[str, Any]) -> float:
    """Provider's overall_band when usable, otherwise the criteria average"""
    value: Optional[Any] = result.get("overall_band")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return clamp_band(float(value))
    return calculate_band(result)
