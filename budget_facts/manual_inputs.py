import math
import re
from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .numbers import extract_number_from_text


REQUIRED_MANUAL_KEYS: Tuple[Tuple[str, str], ...] = (
    ("main_functions", "主要职能"),
    ("organizational_structure", "机构设置"),
    ("glossary", "名词解释"),
    ("budget_change_reason", "预算增减主要原因"),
    ("state_owned_assets", "国有资产占有使用情况"),
    ("project_overview", "项目概述"),
    ("project_basis", "立项依据"),
    ("project_subject", "实施主体"),
    ("project_plan", "实施方案"),
    ("project_cycle", "实施周期"),
    ("project_budget_arrangement", "年度预算安排"),
    ("project_performance_goal", "绩效目标"),
)

MANUAL_KEY_LABELS: Mapping[str, str] = MappingProxyType(dict(REQUIRED_MANUAL_KEYS))

KEYS_WITH_ORG_HEADER = frozenset({"main_functions", "organizational_structure"})

_LEADING_ORG_HEADER = re.compile(
    r"^[^:：。；;]{2,120}(?:（(?:部门|单位|本部)）|\((?:部门|单位|本部)\))(?:主要职能|机构设置)?$"
)


@dataclass
class ManualInput:
    key: str
    value_text: Optional[str] = None
    value_numeric: Optional[float] = None
    value_json: Any = None
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_filled(item: Optional[ManualInput]) -> bool:
    """A manual input counts when it has text, a finite number, or a non-empty JSON value."""
    if item is None:
        return False
    if item.value_text is not None and str(item.value_text).strip():
        return True
    if item.value_numeric is not None:
        try:
            if math.isfinite(float(item.value_numeric)):
                return True
        except (TypeError, ValueError):
            pass
    value = item.value_json
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def numeric_value(item: Optional[ManualInput]) -> Optional[float]:
    if item is None:
        return None
    if item.value_numeric is not None:
        return float(item.value_numeric)
    if item.value_text:
        return extract_number_from_text(item.value_text)
    if isinstance(item.value_json, (int, float)) and not isinstance(item.value_json, bool):
        return float(item.value_json)
    return None


def remove_leading_org_header(value: str) -> str:
    lines = re.split(r"\r?\n", str(value))
    first = 0
    while first < len(lines) and not lines[first].strip():
        first += 1
    if first >= len(lines):
        return ""
    if _LEADING_ORG_HEADER.match(lines[first].strip()):
        lines = lines[first + 1:]
    return "\n".join(lines).strip()


def sanitize_manual_text(key: str, value: Optional[str]) -> Optional[str]:
    """Drop the ``XX单位（部门）主要职能`` heading some sources paste in front of narrative text."""
    if value is None:
        return None
    if key not in KEYS_WITH_ORG_HEADER:
        return str(value)
    return remove_leading_org_header(value)


def normalize_required_keys(raw: Any) -> List[Tuple[str, str]]:
    """Accept ``["key", {"key": ..., "label": ...}]`` from rule params; fall back to the default list."""
    if not isinstance(raw, (list, tuple)) or not raw:
        return list(REQUIRED_MANUAL_KEYS)
    normalized: List[Tuple[str, str]] = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            normalized.append((item, MANUAL_KEY_LABELS.get(item, item)))
        elif isinstance(item, dict) and isinstance(item.get("key"), str):
            label = item.get("label")
            normalized.append((item["key"], label if isinstance(label, str) else item["key"]))
    return normalized or list(REQUIRED_MANUAL_KEYS)


def missing_keys(inputs: Mapping[str, ManualInput], required: Sequence[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(key, label) for key, label in required if not is_filled(inputs.get(key))]
