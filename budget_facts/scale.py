from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .models import ScaleDecision
from .numbers import parse_number


UNIT_MARKER = "单位"

UNIT_TO_SCALE: Mapping[str, float] = MappingProxyType({
    "yuan": 1 / 10000,
    "qianyuan": 0.1,
    "wanyuan": 1.0,
})

DEFAULT_TABLE_UNITS: Mapping[str, str] = MappingProxyType({
    "budget_summary": "yuan",
    "income_summary": "yuan",
    "expenditure_summary": "yuan",
    "fiscal_grant_summary": "yuan",
    "general_budget": "yuan",
    "gov_fund_budget": "yuan",
    "capital_budget": "yuan",
    "basic_expenditure": "yuan",
    "three_public": "wanyuan",
})

DECLARED_UNIT_ROWS = 20
UNIT_TEXT_ROWS = 12
MAGNITUDE_ROWS = 80
YUAN_MAGNITUDE = 100000


def compact_text(value: Any) -> str:
    return "".join(str(value if value is not None else "").split())


def rows_to_text(rows: Sequence[Sequence[Any]], max_rows: int = UNIT_TEXT_ROWS) -> str:
    parts: List[str] = []
    for row in list(rows or [])[:max_rows]:
        if not isinstance(row, (list, tuple)):
            continue
        parts.extend(compact_text(cell) for cell in row)
    return "".join(parts)


def classify_unit_text(text: str) -> Optional[str]:
    """Return the unit named in ``text``; the order of the checks matters."""
    if "万元" in text:
        return "wanyuan"
    if "千元" in text:
        return "qianyuan"
    if "单位:元" in text or "单位：元" in text:
        return "yuan"
    if "元" in text:
        return "yuan"
    return None


def detect_declared_unit(rows: Sequence[Sequence[Any]], max_rows: int = DECLARED_UNIT_ROWS) -> Optional[str]:
    candidates: List[str] = []
    for row in list(rows or [])[:max_rows]:
        if not isinstance(row, (list, tuple)):
            continue
        for cell in row:
            text = compact_text(cell)
            if text and UNIT_MARKER in text:
                candidates.append(text)
    if not candidates:
        return None
    return classify_unit_text("|".join(candidates))


def max_abs_value(rows: Sequence[Sequence[Any]], max_rows: int = MAGNITUDE_ROWS) -> Optional[float]:
    values: List[float] = []
    for row in list(rows or [])[:max_rows]:
        if not isinstance(row, (list, tuple)):
            continue
        for cell in row:
            parsed = parse_number(cell)
            if parsed is not None:
                values.append(abs(parsed))
    return max(values) if values else None


class ScaleDetector:
    """Pick the multiplier that converts a table's raw cells into 万元.

    Signals are tried strongest first: a declared ``单位`` cell, the
    conventional unit for the table type, any unit word near the top of the
    table, and finally the magnitude of the numbers themselves.
    """

    def __init__(
        self,
        default_units: Optional[Mapping[str, str]] = None,
        unit_scales: Optional[Mapping[str, float]] = None,
        yuan_magnitude: float = YUAN_MAGNITUDE,
    ) -> None:
        self.default_units = MappingProxyType(dict(DEFAULT_TABLE_UNITS if default_units is None else default_units))
        self.unit_scales = MappingProxyType(dict(UNIT_TO_SCALE if unit_scales is None else unit_scales))
        self.yuan_magnitude = yuan_magnitude

    def decide(
        self,
        rows: Sequence[Sequence[Any]],
        table_key: Optional[str] = None,
        default_scale: float = 1.0,
    ) -> ScaleDecision:
        declared = detect_declared_unit(rows)
        if declared in self.unit_scales:
            return ScaleDecision(self.unit_scales[declared], "declared_unit", declared)

        default_unit = self.default_units.get(table_key or "")
        if default_unit in self.unit_scales:
            return ScaleDecision(self.unit_scales[default_unit], "table_default", default_unit)

        mentioned = classify_unit_text(rows_to_text(rows))
        if mentioned in self.unit_scales:
            return ScaleDecision(self.unit_scales[mentioned], "unit_text", mentioned)

        peak = max_abs_value(rows)
        if peak is not None and peak >= self.yuan_magnitude:
            return ScaleDecision(self.unit_scales["yuan"], "magnitude", "yuan")
        return ScaleDecision(default_scale, "caller_default", None)

    def detect(self, rows: Sequence[Sequence[Any]], table_key: Optional[str] = None, default_scale: float = 1.0) -> float:
        return self.decide(rows, table_key=table_key, default_scale=default_scale).scale


_DEFAULT_DETECTOR = ScaleDetector()


def detect_scale(rows: Iterable[Sequence[Any]], table_key: Optional[str] = None, default_scale: float = 1.0) -> float:
    return _DEFAULT_DETECTOR.detect(list(rows), table_key=table_key, default_scale=default_scale)
