from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

from .labels import KeyResolver, normalize_label
from .models import STRUCTURED_TABLE, CandidateValue, TableGrid
from .numbers import parse_number, round2
from .scale import ScaleDetector, compact_text, rows_to_text


Rows = Sequence[Sequence[Any]]


class Num(NamedTuple):
    value: float
    cells: Tuple[Tuple[int, int], ...] = ()


Extracted = Dict[str, Num]


class TableShape(NamedTuple):
    key: str
    markers: Tuple[str, ...]
    required_markers: Tuple[str, ...] = ()
    min_score: int = 2


# Evaluated in this order; earlier shapes win when they report the same key.
TABLE_SHAPES: Tuple[TableShape, ...] = (
    TableShape("budget_summary", ("本年收入", "本年支出", "收入总计", "支出总计")),
    TableShape("income_summary", ("本年收入", "财政拨款收入", "其他收入")),
    TableShape("expenditure_summary", ("本年支出", "支出总计")),
    TableShape("fiscal_grant_summary", ("财政拨款收入", "财政拨款支出", "支出总计")),
    TableShape(
        "three_public",
        ("三公", "因公出国", "公务接待费", "公务用车"),
        required_markers=("因公出国", "公务接待费"),
    ),
)

SHAPE_KEYS = frozenset(shape.key for shape in TABLE_SHAPES)

SHAPE_SCAN_ROWS = 28
LABEL_SCAN_ROWS = 20


def row_text(row: Sequence[Any]) -> str:
    if not isinstance(row, (list, tuple)):
        return ""
    return "".join(normalize_label(cell) for cell in row)


def find_row(rows: Rows, include: Sequence[str], exclude: Sequence[str] = ()) -> Optional[int]:
    """Index of the first row whose text holds every ``include`` token and no ``exclude`` token."""
    for index, row in enumerate(rows or []):
        text = row_text(row)
        if not text:
            continue
        if all(token in text for token in include) and not any(token in text for token in exclude):
            return index
    return None


def read_value(rows: Rows, row_index: Optional[int], col: int, scale: float, fallback_zero: bool = False) -> Optional[Num]:
    if row_index is None:
        return None
    row = rows[row_index]
    parsed = parse_number(row[col]) if col < len(row) else None
    if parsed is None:
        return Num(0.0, ((row_index, col),)) if fallback_zero else None
    return Num(parsed * scale, ((row_index, col),))


def is_top_level_category_row(row: Sequence[Any]) -> bool:
    if not isinstance(row, (list, tuple)) or len(row) < 4:
        return False
    first = compact_text(row[0])
    second = compact_text(row[1])
    if len(first) != 3 or not first.isdigit():
        return False
    return bool(second) and not second.isdigit()


def sum_column(rows: Rows, row_indexes: Sequence[int], col: int, scale: float) -> Num:
    total = 0.0
    cells = []
    for index in row_indexes:
        row = rows[index]
        parsed = parse_number(row[col]) if col < len(row) else None
        if parsed is not None:
            total += parsed * scale
            cells.append((index, col))
    return Num(total, tuple(cells))


def _compact(values: Mapping[str, Optional[Num]]) -> Extracted:
    return {key: num for key, num in values.items() if num is not None}


def extract_budget_summary(rows: Rows, scale: float) -> Extracted:
    revenue_total = find_row(rows, ["收入总计"])
    expenditure_total = find_row(rows, ["支出总计"])
    fiscal = find_row(rows, ["财政拨款收入"])
    business = find_row(rows, ["事业收入"], ["事业单位经营收入"])
    operation = find_row(rows, ["事业单位经营收入"])
    other = find_row(rows, ["其他收入"])
    return _compact({
        "budget_revenue_total": read_value(rows, revenue_total, 1, scale),
        "budget_revenue_fiscal": read_value(rows, fiscal, 1, scale, fallback_zero=True),
        "budget_revenue_business": read_value(rows, business, 1, scale, fallback_zero=True),
        "budget_revenue_operation": read_value(rows, operation, 1, scale, fallback_zero=True),
        "budget_revenue_other": read_value(rows, other, 1, scale, fallback_zero=True),
        "budget_expenditure_total": read_value(rows, expenditure_total, 3, scale),
    })


def _sum_top_level(rows: Rows, scale: float, columns: Mapping[str, int]) -> Extracted:
    indexes = [i for i, row in enumerate(rows or []) if is_top_level_category_row(row)]
    if not indexes:
        return {}
    return {key: sum_column(rows, indexes, col, scale) for key, col in columns.items()}


def extract_income_summary(rows: Rows, scale: float) -> Extracted:
    return _sum_top_level(rows, scale, {
        "budget_revenue_total": 2,
        "budget_revenue_fiscal": 3,
        "budget_revenue_business": 4,
        "budget_revenue_operation": 5,
        "budget_revenue_other": 6,
    })


def extract_expenditure_summary(rows: Rows, scale: float) -> Extracted:
    return _sum_top_level(rows, scale, {
        "budget_expenditure_total": 2,
        "budget_expenditure_basic": 3,
        "budget_expenditure_project": 4,
    })


def extract_fiscal_grant_summary(rows: Rows, scale: float) -> Extracted:
    total = find_row(rows, ["支出总计"])
    if total is None:
        total = find_row(rows, ["收入总计"])
    return _compact({
        "fiscal_grant_revenue_total": read_value(rows, total, 1, scale),
        "fiscal_grant_expenditure_total": read_value(rows, total, 3, scale),
        "fiscal_grant_expenditure_general": read_value(rows, total, 4, scale, fallback_zero=True),
        "fiscal_grant_expenditure_gov_fund": read_value(rows, total, 5, scale, fallback_zero=True),
        "fiscal_grant_expenditure_capital": read_value(rows, total, 6, scale, fallback_zero=True),
    })


class ThreePublicLabels(NamedTuple):
    operation_fund: bool = False
    outbound: bool = False
    reception: bool = False
    vehicle_sub_headers: bool = False


def three_public_labels(rows: Rows) -> ThreePublicLabels:
    text = rows_to_text(rows, LABEL_SCAN_ROWS)
    return ThreePublicLabels(
        operation_fund="机关运行经费" in text,
        outbound="因公出国" in text,
        reception="公务接待费" in text,
        vehicle_sub_headers=any(token in text for token in ("小计", "购置费", "运行费")),
    )


def _three_public_full(nums: List[Num], labels: ThreePublicLabels) -> Extracted:
    # total, outbound, reception, vehicle total, purchase, operation, operation fund
    return {
        "three_public_total": nums[0],
        "three_public_outbound": nums[1],
        "three_public_reception": nums[2],
        "three_public_vehicle_total": nums[3],
        "three_public_vehicle_purchase": nums[4],
        "three_public_vehicle_operation": nums[5],
        "operation_fund": nums[6],
    }


def _three_public_without_fund(nums: List[Num], labels: ThreePublicLabels) -> Extracted:
    return {
        "three_public_total": nums[0],
        "three_public_outbound": nums[1],
        "three_public_reception": nums[2],
        "three_public_vehicle_total": nums[3],
        "three_public_vehicle_purchase": nums[4],
        "three_public_vehicle_operation": nums[5],
    }


def _three_public_sparse(nums: List[Num], labels: ThreePublicLabels) -> Extracted:
    result: Extracted = {"three_public_total": nums[0]}
    if labels.outbound and labels.reception:
        result["three_public_reception"] = nums[1]
        result["three_public_outbound"] = Num(0.0)
    elif labels.reception:
        result["three_public_reception"] = nums[1]
    elif labels.outbound:
        result["three_public_outbound"] = nums[1]
    fund_by_magnitude = abs(nums[2].value) > max(abs(nums[0].value), abs(nums[1].value)) * 5
    if labels.operation_fund or (labels.vehicle_sub_headers and fund_by_magnitude):
        result["operation_fund"] = nums[2]
    return result


def _three_public_pair(nums: List[Num], labels: ThreePublicLabels) -> Extracted:
    result: Extracted = {"three_public_total": nums[0]}
    if labels.operation_fund:
        result["operation_fund"] = nums[1]
    elif labels.reception:
        result["three_public_reception"] = nums[1]
    elif labels.outbound:
        result["three_public_outbound"] = nums[1]
    return result


def _three_public_total_only(nums: List[Num], labels: ThreePublicLabels) -> Extracted:
    return {"three_public_total": nums[0]}


THREE_PUBLIC_VARIANTS: Mapping[int, Callable[[List[Num], ThreePublicLabels], Extracted]] = MappingProxyType({
    7: _three_public_full,
    6: _three_public_without_fund,
    3: _three_public_sparse,
    2: _three_public_pair,
})


def three_public_variant(count: int) -> Callable[[List[Num], ThreePublicLabels], Extracted]:
    return THREE_PUBLIC_VARIANTS.get(min(count, 7), _three_public_total_only)


def _operation_fund_row(rows: Rows, skip: int, scale: float) -> Optional[Num]:
    """Operation fund reported on its own ``机关运行经费 ... number`` row."""
    for index, row in enumerate(rows or []):
        if index == skip or not isinstance(row, (list, tuple)):
            continue
        for col, cell in enumerate(row):
            if "机关运行经费" not in compact_text(cell):
                continue
            for value_col in range(col + 1, len(row)):
                parsed = parse_number(row[value_col])
                if parsed is not None:
                    return Num(parsed * scale, ((index, value_col),))
    return None


def extract_three_public(rows: Rows, scale: float) -> Extracted:
    """Read the last row carrying at least two numbers and map it by arity."""
    data_index = None
    for index in range(len(rows or []) - 1, -1, -1):
        row = rows[index]
        if isinstance(row, (list, tuple)) and sum(1 for cell in row if parse_number(cell) is not None) >= 2:
            data_index = index
            break
    if data_index is None:
        return {}
    nums = [
        Num(parsed * scale, ((data_index, col),))
        for col, parsed in enumerate(parse_number(cell) for cell in rows[data_index])
        if parsed is not None
    ]
    extracted = three_public_variant(len(nums))(nums, three_public_labels(rows))
    if "operation_fund" not in extracted:
        fund = _operation_fund_row(rows, data_index, scale)
        if fund is not None:
            extracted["operation_fund"] = fund
    return extracted


SHAPE_EXTRACTORS: Mapping[str, Callable[[Rows, float], Extracted]] = MappingProxyType({
    "budget_summary": extract_budget_summary,
    "income_summary": extract_income_summary,
    "expenditure_summary": extract_expenditure_summary,
    "fiscal_grant_summary": extract_fiscal_grant_summary,
    "three_public": extract_three_public,
})


def extract_label_value_rows(rows: Rows, scale: float, resolver: KeyResolver) -> Tuple[Extracted, Dict[str, str]]:
    """Read ``label, number`` cell pairs, resolving each label to a fact key."""
    values: Extracted = {}
    labels: Dict[str, str] = {}
    for row_index, row in enumerate(rows or []):
        if not isinstance(row, (list, tuple)):
            continue
        for col in range(len(row) - 1):
            label = row[col]
            if label is None or parse_number(label) is not None:
                continue
            parsed = parse_number(row[col + 1])
            if parsed is None:
                continue
            key = resolver.resolve(label)
            if key is None or key in values:
                continue
            values[key] = Num(parsed * scale, ((row_index, col + 1),))
            labels[key] = str(label).strip()
    return values, labels


def coerce_tables(tables: Iterable[Union[TableGrid, Dict[str, Any]]]) -> List[TableGrid]:
    grids: List[TableGrid] = []
    for table in tables or []:
        if isinstance(table, TableGrid):
            grids.append(table)
        else:
            grids.append(TableGrid.model_validate(table))
    return grids


def resolve_table(tables: Sequence[TableGrid], shape: TableShape) -> Optional[TableGrid]:
    """Table tagged with the shape key, otherwise the best marker-scoring table."""
    for table in tables:
        if table.table_key == shape.key and table.rows:
            return table
    best: Optional[TableGrid] = None
    best_score = 0
    for table in tables:
        if not table.rows or table.table_key in SHAPE_KEYS:
            continue
        text = rows_to_text(table.rows, SHAPE_SCAN_ROWS)
        if not all(marker in text for marker in shape.required_markers):
            continue
        score = sum(1 for marker in shape.markers if marker in text)
        if score > best_score:
            best_score = score
            best = table
    return best if best_score >= shape.min_score else None


def _candidate(key: str, num: Num, table: TableGrid, extractor: str, scale_reason: str, raw_label: str = "") -> CandidateValue:
    cells = [{"table_key": table.table_key, "row": row, "col": col} for row, col in num.cells]
    reference = {
        "table_key": table.table_key,
        "extractor": extractor,
        "scale_reason": scale_reason,
        "cells": cells,
    }
    if table.page is not None:
        reference["page"] = table.page
    return CandidateValue(
        key=key,
        raw_label=raw_label,
        numeric_value=round2(num.value),
        source=STRUCTURED_TABLE,
        source_reference=reference,
    )


def _derived(key: str, value: float, sources: List[CandidateValue]) -> CandidateValue:
    cells: List[Dict[str, Any]] = []
    for source in sources:
        cells.extend(source.source_reference.get("cells") or [])
    return CandidateValue(
        key=key,
        raw_label="",
        numeric_value=round2(value),
        source=STRUCTURED_TABLE,
        source_reference={
            "extractor": "derived",
            "derived_from": [source.key for source in sources],
            "cells": cells,
        },
    )


def apply_derived_totals(found: Dict[str, CandidateValue]) -> Dict[str, CandidateValue]:
    """Fill totals that can be computed from other values; existing totals are never replaced."""
    result = dict(found)
    if "budget_revenue_total" not in result:
        parts = [
            result[key]
            for key in ("budget_revenue_fiscal", "budget_revenue_business", "budget_revenue_operation", "budget_revenue_other")
            if key in result
        ]
        if parts:
            result["budget_revenue_total"] = _derived(
                "budget_revenue_total", sum(part.numeric_value for part in parts), parts
            )
    fallbacks = (
        ("fiscal_grant_revenue_total", "budget_revenue_fiscal"),
        ("fiscal_grant_expenditure_total", "budget_expenditure_total"),
        ("fiscal_grant_expenditure_general", "fiscal_grant_expenditure_total"),
    )
    for target, source in fallbacks:
        if target not in result and source in result:
            result[target] = _derived(target, result[source].numeric_value, [result[source]])
    return result


def extract_structured_candidates(
    tables: Iterable[Union[TableGrid, Dict[str, Any]]],
    resolver: Optional[KeyResolver] = None,
    detector: Optional[ScaleDetector] = None,
    derive_totals: bool = True,
) -> List[CandidateValue]:
    resolver = resolver or KeyResolver()
    detector = detector or ScaleDetector()
    grids = coerce_tables(tables)
    found: Dict[str, CandidateValue] = {}
    claimed = set()

    for shape in TABLE_SHAPES:
        table = resolve_table(grids, shape)
        if table is None:
            continue
        claimed.add(id(table))
        decision = detector.decide(table.rows, table_key=shape.key)
        extracted = SHAPE_EXTRACTORS[shape.key](table.rows, decision.scale)
        for key, num in extracted.items():
            if key not in found:
                found[key] = _candidate(key, num, table, shape.key, decision.reason)

    # Shape tables reuse labels such as 收入总计 for their own totals.
    for table in grids:
        if id(table) in claimed or table.table_key in SHAPE_KEYS:
            continue
        decision = detector.decide(table.rows, table_key=table.table_key)
        extracted, labels = extract_label_value_rows(table.rows, decision.scale, resolver)
        for key, num in extracted.items():
            if key not in found:
                found[key] = _candidate(key, num, table, "label_value", decision.reason, labels.get(key, ""))

    if derive_totals:
        found = apply_derived_totals(found)
    return list(found.values())


def extract_table_facts(tables: Iterable[Union[TableGrid, Dict[str, Any]]], **kwargs: Any) -> Dict[str, float]:
    return {candidate.key: candidate.numeric_value for candidate in extract_structured_candidates(tables, **kwargs)}
