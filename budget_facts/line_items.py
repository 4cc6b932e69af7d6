import math
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


DEFAULT_REASON_THRESHOLD = 0.1
AUTO_REASON_FILLER = "原因待补充"


@dataclass
class LineItem:
    item_key: str
    item_label: str
    amount_current: Optional[float] = None
    amount_prev: Optional[float] = None
    reason_text: Optional[str] = None
    reason_is_manual: Optional[bool] = None
    order_no: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_reason_threshold(value: Any) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return DEFAULT_REASON_THRESHOLD
    return parsed if math.isfinite(parsed) else DEFAULT_REASON_THRESHOLD


def change_ratio(current: Optional[float], prev: Optional[float]) -> Optional[float]:
    if current is None or prev is None or prev == 0:
        return None
    return abs(current - prev) / abs(prev)


def is_reason_required(current: Optional[float], prev: Optional[float], threshold: float = DEFAULT_REASON_THRESHOLD) -> bool:
    if current is None or prev is None:
        return False
    if prev == 0:
        return current != 0
    return change_ratio(current, prev) >= threshold


def build_default_reason_text(label: str, current: Optional[float], prev: Optional[float], reason: str = "") -> str:
    reason = re.sub(r"^主要(原因是)?[:：]?\s*", "", (reason or "").strip()).strip()
    if not reason:
        reason = AUTO_REASON_FILLER
    return f"“{label}”{current or 0:.2f}万元，上年:{prev or 0:.2f}万元，主要{reason}。"


def is_auto_generated_reason(item: LineItem) -> bool:
    text = (item.reason_text or "").strip()
    if not text:
        return True
    if AUTO_REASON_FILLER in text:
        return True
    return text == build_default_reason_text(item.item_label, item.amount_current, item.amount_prev)


def has_manual_reason(item: LineItem) -> bool:
    if not (item.reason_text or "").strip():
        return False
    if item.reason_is_manual is not None:
        return bool(item.reason_is_manual)
    return not is_auto_generated_reason(item)
