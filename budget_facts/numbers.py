import math
import re
from typing import Any, Optional


_STRICT_NUMBER = re.compile(r"^[-+]?\d+(\.\d+)?$")
_NULL_LIKE = {"none", "null", "nan", "n/a", "na", "-", "—", "--"}


def parse_number(value: Any) -> Optional[float]:
    """Parse a table cell into a float.

    Thousands separators and whitespace are ignored, ``(123)`` is negative and
    an empty cell or a lone ``-`` means no value. Anything else that is not a
    plain decimal number is rejected.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    cleaned = re.sub(r"[,，\s]", "", str(value))
    if not cleaned or cleaned == "-":
        return None
    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]
    elif cleaned.startswith("（") and cleaned.endswith("）"):
        negative = True
        cleaned = cleaned[1:-1]
    if not _STRICT_NUMBER.match(cleaned):
        return None
    number = float(cleaned)
    return -number if negative else number


def coerce_number(value: Any) -> Optional[float]:
    """Lenient variant used for free text: keeps the first number found."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    cleaned = str(value).strip()
    if not cleaned or cleaned.lower() in _NULL_LIKE:
        return None
    negative = cleaned.startswith("(") and cleaned.endswith(")")
    cleaned = cleaned.replace("(", "").replace(")", "")
    cleaned = cleaned.replace(",", "").replace("，", "").replace("%", "")
    cleaned = cleaned.replace("¥", "").replace("￥", "")
    cleaned = cleaned.replace("−", "-").replace("–", "-")
    match = re.search(r"-?\d+(?:\.\d+)?", cleaned)
    if not match:
        return None
    number = float(match.group(0))
    if negative and number > 0:
        number = -number
    return number


def extract_number_from_text(text: Any) -> Optional[float]:
    if text is None:
        return None
    match = re.search(r"-?\d+(?:\.\d+)?", str(text).replace(",", ""))
    if not match:
        return None
    return float(match.group(0))


def round2(value: float) -> float:
    return round(value, 2) + 0.0
