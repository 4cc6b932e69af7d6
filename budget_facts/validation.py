import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .labels import FACT_LABELS
from .line_items import LineItem, change_ratio, has_manual_reason, is_reason_required, resolve_reason_threshold
from .manual_inputs import ManualInput, REQUIRED_MANUAL_KEYS, missing_keys, normalize_required_keys, numeric_value
from .models import FATAL, SUGGEST, WARNING, Fact, RuleConfig, ValidationIssue, ValidationResult, normalize_level
from .store import FactStore


DEFAULT_TOLERANCE = 0.01
DEFAULT_LINE_ITEM_THRESHOLD = 10
DEFAULT_YOY_RATIO = 0.5

PLACEHOLDER_PATTERN = re.compile(r"(XX|XXX|……|待补充|待填写|TODO|TBD|ＸＸ)", re.IGNORECASE)

PLACEHOLDER_CHECK_KEYS: Tuple[str, ...] = (
    "budget_explanation",
    "budget_change_reason",
    "state_owned_assets",
    "other_notes",
    "main_functions",
    "organizational_structure",
    "project_overview",
    "project_basis",
    "project_subject",
    "project_plan",
    "project_cycle",
    "project_budget_arrangement",
    "project_performance_goal",
)


@dataclass(frozen=True)
class ValidationContext:
    facts_by_key: Mapping[str, Fact] = field(default_factory=dict)
    manual_inputs_by_key: Mapping[str, ManualInput] = field(default_factory=dict)
    line_items: Sequence[LineItem] = ()
    required_manual_keys: Sequence[Tuple[str, str]] = REQUIRED_MANUAL_KEYS
    reason_threshold: float = 0.1
    previous_facts_by_key: Mapping[str, Fact] = field(default_factory=dict)
    draft_id: Optional[int] = None
    year: Optional[int] = None

    def value(self, key: str) -> Optional[float]:
        fact = self.facts_by_key.get(key)
        if fact is None or fact.value_numeric is None:
            return None
        return float(fact.value_numeric)


@dataclass(frozen=True)
class EffectiveConfig:
    level: str
    tolerance: float
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Rule:
    rule_id: str
    level: str
    title: str
    description: str
    run: Callable[[ValidationContext, EffectiveConfig], List[ValidationIssue]]
    tolerance: float = DEFAULT_TOLERANCE


def build_evidence(
    ctx: ValidationContext,
    keys: Sequence[str],
    anchor: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    cells: List[Dict[str, Any]] = []
    for key in keys:
        fact = ctx.facts_by_key.get(key)
        if fact is not None:
            cells.extend(fact.evidence_cells)
    evidence: Dict[str, Any] = dict(extra or {})
    evidence["keys"] = list(keys)
    if cells:
        evidence["cells"] = cells
    evidence["anchor"] = anchor or "|".join(f"facts_budget:{key}" for key in keys)
    return evidence


def _issue(rule_id: str, message: str, config: EffectiveConfig, evidence: Dict[str, Any], level: Optional[str] = None) -> ValidationIssue:
    return ValidationIssue(
        rule_id=rule_id,
        level=level,
        message=message,
        tolerance=config.tolerance,
        evidence=evidence,
    )


def _missing_operand(ctx: ValidationContext, rule_id: str, keys: Sequence[str], message: str, config: EffectiveConfig) -> ValidationIssue:
    absent = [key for key in keys if ctx.value(key) is None]
    return _issue(
        rule_id,
        message,
        config,
        build_evidence(ctx, keys, anchor="|".join(keys), extra={"reason": "missing_operand", "missing_keys": absent}),
        level=FATAL,
    )


def balance_rule(rule_id: str, title: str, left_key: str, right_key: str, missing_message: str) -> Rule:
    def run(ctx: ValidationContext, config: EffectiveConfig) -> List[ValidationIssue]:
        left = ctx.value(left_key)
        right = ctx.value(right_key)
        if left is None or right is None:
            return [_missing_operand(ctx, rule_id, [left_key, right_key], missing_message, config)]
        diff = left - right
        if abs(diff) <= config.tolerance + 1e-9:
            return []
        return [_issue(
            rule_id,
            f"{FACT_LABELS[left_key]}与{FACT_LABELS[right_key]}差额{diff:.3f}万元，超过容差",
            config,
            build_evidence(ctx, [left_key, right_key], extra={"diff": round(diff, 6)}),
        )]

    return Rule(rule_id, FATAL, title, f"{FACT_LABELS[left_key]}与{FACT_LABELS[right_key]}差额不超过容差", run)


def _revenue_composition(ctx: ValidationContext, config: EffectiveConfig) -> List[ValidationIssue]:
    parts = ["budget_revenue_fiscal", "budget_revenue_business", "budget_revenue_operation", "budget_revenue_other"]
    keys = ["budget_revenue_total"] + parts
    total = ctx.value("budget_revenue_total")
    if total is None:
        return [_missing_operand(ctx, "BUDGET.RZ003", keys, "预算汇总缺少收入合计", config)]
    # Absent parts count as zero, but with none present there is nothing to compare.
    if all(ctx.value(key) is None for key in parts):
        return [_missing_operand(ctx, "BUDGET.RZ003", keys, "预算汇总缺少收入明细", config)]
    parts_sum = sum(ctx.value(key) or 0.0 for key in parts)
    diff = total - parts_sum
    if abs(diff) <= config.tolerance + 1e-9:
        return []
    return [_issue(
        "BUDGET.RZ003",
        f"收入合计与明细之和差额{diff:.3f}万元，超过容差",
        config,
        build_evidence(ctx, keys, extra={"components_sum": round(parts_sum, 6), "diff": round(diff, 6)}),
    )]


def composition_rule(rule_id: str, level: str, title: str, total_key: str, part_keys: Sequence[str]) -> Rule:
    """Total must equal the sum of its parts; checked only when every operand is known."""
    keys = [total_key] + list(part_keys)

    def run(ctx: ValidationContext, config: EffectiveConfig) -> List[ValidationIssue]:
        values = [ctx.value(key) for key in keys]
        if any(value is None for value in values):
            return []
        parts_sum = sum(values[1:])
        diff = values[0] - parts_sum
        if abs(diff) <= config.tolerance + 1e-9:
            return []
        labels = "、".join(FACT_LABELS[key] for key in part_keys)
        return [_issue(
            rule_id,
            f"{FACT_LABELS[total_key]}不等于{labels}之和，差额{diff:.3f}万元",
            config,
            build_evidence(ctx, keys, extra={"components_sum": round(parts_sum, 6), "diff": round(diff, 6)}),
        )]

    return Rule(rule_id, level, title, f"{FACT_LABELS[total_key]}等于明细之和", run)


def _required_manual_inputs(ctx: ValidationContext, config: EffectiveConfig) -> List[ValidationIssue]:
    missing = missing_keys(ctx.manual_inputs_by_key, ctx.required_manual_keys)
    if not missing:
        return []
    keys = [key for key, _ in missing]
    return [_issue(
        "BUDGET.RZ004",
        "缺少必填字段：" + "、".join(label or key for key, label in missing),
        config,
        {
            "anchor": "manual_inputs:" + ",".join(keys),
            "missing_keys": [{"key": key, "expected_source": "manual_inputs"} for key in keys],
        },
    )]


def _summary_text_consistency(ctx: ValidationContext, config: EffectiveConfig) -> List[ValidationIssue]:
    summary = ctx.manual_inputs_by_key.get("summary_revenue_text")
    text_value = numeric_value(summary)
    revenue = ctx.value("budget_revenue_total")
    if text_value is None or revenue is None:
        return []
    if abs(text_value - revenue) <= config.tolerance + 1e-9:
        return []
    extra: Dict[str, Any] = {"text_value": text_value}
    if summary is not None and summary.evidence:
        extra["manual_evidence"] = summary.evidence
    return [_issue(
        "BUDGET.RZ005",
        f"文本数字{text_value:g}与预算收入{revenue:g}不一致",
        config,
        build_evidence(ctx, ["budget_revenue_total"], anchor="summary_revenue_text", extra=extra),
    )]


def _line_item_layout(ctx: ValidationContext, config: EffectiveConfig) -> List[ValidationIssue]:
    threshold = int(config.params.get("line_item_threshold", DEFAULT_LINE_ITEM_THRESHOLD))
    count = len(ctx.line_items)
    if count <= threshold:
        return []
    return [_issue(
        "BUDGET.RZ006",
        f"明细行数量{count}超过阈值{threshold}，建议检查分页",
        config,
        {"anchor": "line_items_reason", "count": count, "threshold": threshold},
    )]


def contains_placeholder(text: Any) -> bool:
    if not isinstance(text, str) or not text:
        return False
    return PLACEHOLDER_PATTERN.search(text) is not None


def _placeholder_tokens(ctx: ValidationContext, config: EffectiveConfig) -> List[ValidationIssue]:
    bad_keys = [
        key for key in PLACEHOLDER_CHECK_KEYS
        if key in ctx.manual_inputs_by_key and contains_placeholder(ctx.manual_inputs_by_key[key].value_text or "")
    ]
    bad_items = [item.item_key for item in ctx.line_items if contains_placeholder(item.reason_text or "")]
    if not bad_keys and not bad_items:
        return []
    parts = []
    if bad_keys:
        parts.append("手工文案字段存在占位词: " + ", ".join(bad_keys))
    if bad_items:
        parts.append(f"明细原因存在占位词: {len(bad_items)} 条")
    return [_issue(
        "BUDGET.RZ007",
        "；".join(parts),
        config,
        {"anchor": "quality_placeholder_check", "manual_keys": bad_keys, "line_item_keys": bad_items},
    )]


def _year_over_year(ctx: ValidationContext, config: EffectiveConfig) -> List[ValidationIssue]:
    limit = float(config.params.get("ratio_threshold", DEFAULT_YOY_RATIO))
    issues: List[ValidationIssue] = []
    for key in sorted(ctx.facts_by_key):
        current = ctx.value(key)
        previous_fact = ctx.previous_facts_by_key.get(key)
        previous = previous_fact.value_numeric if previous_fact is not None else None
        ratio = change_ratio(current, previous)
        if ratio is None or ratio <= limit:
            continue
        issues.append(_issue(
            "BUDGET.RZ010",
            f"{FACT_LABELS.get(key, key)}与上一年度偏差超过{limit:.0%}",
            config,
            build_evidence(ctx, [key], extra={
                "current": current,
                "previous": previous,
                "ratio": round(ratio, 4),
                "prev_year": ctx.year - 1 if ctx.year is not None else None,
            }),
        ))
    return issues


def _reason_required(ctx: ValidationContext, config: EffectiveConfig) -> List[ValidationIssue]:
    threshold = resolve_reason_threshold(config.params.get("threshold", ctx.reason_threshold))
    issues: List[ValidationIssue] = []
    for item in ctx.line_items:
        if not is_reason_required(item.amount_current, item.amount_prev, threshold):
            continue
        if has_manual_reason(item):
            continue
        issues.append(_issue(
            "REASON_REQUIRED_MISSING",
            f"条目“{item.item_label}”缺少必填原因",
            config,
            {
                "anchor": f"line_items_reason:{item.item_key}",
                "draft_id": ctx.draft_id,
                "item_key": item.item_key,
                "threshold": threshold,
            },
        ))
    return issues


RULES: Tuple[Rule, ...] = (
    balance_rule(
        "BUDGET.RZ001", "收入总计与支出总计一致",
        "budget_revenue_total", "budget_expenditure_total",
        "预算汇总缺少收入总计或支出总计",
    ),
    balance_rule(
        "BUDGET.RZ002", "财政拨款收入与支出一致",
        "fiscal_grant_revenue_total", "fiscal_grant_expenditure_total",
        "财政拨款收支总表缺少拨款收入或拨款支出",
    ),
    Rule("BUDGET.RZ003", FATAL, "收入合计等于明细之和", "收入合计等于财政拨款收入、事业收入、经营收入、其他收入之和", _revenue_composition),
    Rule("BUDGET.RZ004", FATAL, "模板必填项完整", "关键必填字段不能为空", _required_manual_inputs),
    Rule("BUDGET.RZ005", WARNING, "文本与数字一致性", "摘要文本中的数字应与预算汇总保持一致", _summary_text_consistency),
    Rule("BUDGET.RZ006", SUGGEST, "版式一致性提醒", "明细行过多可能导致版式分页", _line_item_layout),
    Rule("BUDGET.RZ007", FATAL, "文案占位符检查", "关键文案字段及明细原因中不应包含占位词", _placeholder_tokens),
    composition_rule(
        "BUDGET.RZ008", FATAL, "支出总计等于基本支出与项目支出之和",
        "budget_expenditure_total", ["budget_expenditure_basic", "budget_expenditure_project"],
    ),
    composition_rule(
        "BUDGET.RZ009", WARNING, "三公经费合计等于明细之和",
        "three_public_total", ["three_public_outbound", "three_public_reception", "three_public_vehicle_total"],
    ),
    Rule("BUDGET.RZ010", WARNING, "同比异常波动", "与上一年度相比偏差过大", _year_over_year),
    Rule("REASON_REQUIRED_MISSING", FATAL, "财政拨款支出主要内容原因必填", "必填条目未填写原因", _reason_required),
)


def effective_config(rule: Rule, config: Optional[RuleConfig]) -> EffectiveConfig:
    params = dict(config.params) if config is not None else {}
    tolerance = rule.tolerance
    if "tolerance" in params:
        try:
            tolerance = float(params["tolerance"])
        except (TypeError, ValueError):
            tolerance = rule.tolerance
    level = (config.level_override if config is not None else None) or rule.level
    return EffectiveConfig(level=normalize_level(level), tolerance=tolerance, params=params)


def _coerce_configs(configs: Optional[Any]) -> Dict[str, RuleConfig]:
    if not configs:
        return {}
    items = configs.values() if isinstance(configs, Mapping) else configs
    result: Dict[str, RuleConfig] = {}
    for item in items:
        config = item if isinstance(item, RuleConfig) else RuleConfig.model_validate(item)
        result[config.rule_id] = config
    return result


def evaluate_rules(
    ctx: ValidationContext,
    configs: Optional[Any] = None,
    rules: Sequence[Rule] = RULES,
) -> List[ValidationIssue]:
    """Run every enabled rule; a failing rule becomes a FATAL issue of its own."""
    config_map = _coerce_configs(configs)
    issues: List[ValidationIssue] = []
    for rule in rules:
        config = config_map.get(rule.rule_id)
        if config is not None and not config.is_enabled:
            continue
        effective = effective_config(rule, config)
        try:
            produced = rule.run(ctx, effective) or []
        except Exception as exc:
            produced = [ValidationIssue(
                rule_id=rule.rule_id,
                level=FATAL,
                message=f"规则执行失败: {exc}",
                tolerance=effective.tolerance,
                evidence={"anchor": f"rule_error:{rule.rule_id}", "error": type(exc).__name__},
            )]
        for issue in produced:
            issue.level = normalize_level(issue.level or effective.level)
            if issue.tolerance is None:
                issue.tolerance = effective.tolerance
            issue.draft_id = ctx.draft_id
            issues.append(issue)
    return issues


def validate(draft_context: ValidationContext, configs: Optional[Any] = None) -> ValidationResult:
    return ValidationResult(draft_id=draft_context.draft_id, issues=evaluate_rules(draft_context, configs))


def load_context(store: FactStore, draft_id: int, configs: Optional[Mapping[str, RuleConfig]] = None) -> ValidationContext:
    draft = store.get_draft(draft_id)
    configs = configs if configs is not None else store.load_rule_configs()
    required_config = configs.get("BUDGET.RZ004")
    reason_config = configs.get("REASON_REQUIRED_MISSING")
    year = int(draft["year"])
    with store.transaction(immediate=False):
        facts = store.get_facts(draft["unit_id"], year, stage=draft["stage"])
        previous = store.get_facts(draft["unit_id"], year - 1, stage=draft["stage"])
        manual = store.get_manual_inputs(draft_id)
        line_items = store.get_line_items(draft_id)
    return ValidationContext(
        facts_by_key=facts,
        manual_inputs_by_key=manual,
        line_items=line_items,
        required_manual_keys=normalize_required_keys(
            required_config.params.get("required_keys") if required_config is not None else None
        ),
        reason_threshold=resolve_reason_threshold(
            reason_config.params.get("threshold") if reason_config is not None else None
        ),
        previous_facts_by_key=previous,
        draft_id=draft_id,
        year=year,
    )


def run_validation(store: FactStore, draft_id: int) -> ValidationResult:
    """Evaluate the draft and replace its stored issues with the new set."""
    configs = store.load_rule_configs()
    ctx = load_context(store, draft_id, configs)
    result = validate(ctx, configs)
    store.replace_issues(draft_id, result.issues)
    return result


def can_generate_report(result: ValidationResult) -> bool:
    return result.fatal_count == 0
