import pytest

from budget_facts.line_items import LineItem, build_default_reason_text
from budget_facts.manual_inputs import REQUIRED_MANUAL_KEYS, ManualInput
from budget_facts.models import Fact, RuleConfig
from budget_facts.store import FactStore
from budget_facts.validation import (
    RULES,
    Rule,
    ValidationContext,
    can_generate_report,
    contains_placeholder,
    evaluate_rules,
    load_context,
    run_validation,
    validate,
)


def _facts(values, year=2024):
    return {
        key: Fact("u1", year, "FINAL", key, value, source_reference={"cells": [{"table_key": "budget_summary", "row": 1, "col": 1}]})
        for key, value in values.items()
    }


def _filled_manual_inputs():
    return {key: ManualInput(key=key, value_text=f"{label}内容") for key, label in REQUIRED_MANUAL_KEYS}


def _context(facts=None, manual=None, line_items=(), previous=None, draft_id=1, **kwargs):
    return ValidationContext(
        facts_by_key=_facts(facts or {}),
        manual_inputs_by_key=_filled_manual_inputs() if manual is None else manual,
        line_items=list(line_items),
        previous_facts_by_key=_facts(previous or {}, year=2023),
        draft_id=draft_id,
        year=2024,
        **kwargs,
    )


def _issues(result_or_issues, rule_id):
    issues = getattr(result_or_issues, "issues", result_or_issues)
    return [issue for issue in issues if issue.rule_id == rule_id]


BALANCED = {
    "budget_revenue_total": 100.0,
    "budget_expenditure_total": 100.0,
    "budget_revenue_fiscal": 100.0,
    "fiscal_grant_revenue_total": 100.0,
    "fiscal_grant_expenditure_total": 100.0,
}


def test_rule_registry_ids_are_unique():
    ids = [rule.rule_id for rule in RULES]
    assert len(ids) == len(set(ids)) == 11


def test_balanced_context_has_no_issues():
    result = validate(_context(BALANCED))
    assert result.issues == []
    assert can_generate_report(result)


@pytest.mark.parametrize("expenditure,expected", [(100.009, 0), (100.011, 1), (99.99, 0), (99.989, 1)])
def test_balance_tolerance_boundary(expenditure, expected):
    result = validate(_context(dict(BALANCED, budget_expenditure_total=expenditure)))
    issues = _issues(result, "BUDGET.RZ001")
    assert len(issues) == expected
    if issues:
        assert issues[0].level == "FATAL"
        assert issues[0].tolerance == 0.01
        assert issues[0].evidence["keys"] == ["budget_revenue_total", "budget_expenditure_total"]
        assert issues[0].evidence["anchor"] == "facts_budget:budget_revenue_total|facts_budget:budget_expenditure_total"
        assert issues[0].evidence["cells"]


def test_missing_operand_is_reported_as_fatal():
    facts = dict(BALANCED)
    del facts["fiscal_grant_expenditure_total"]
    issues = _issues(validate(_context(facts)), "BUDGET.RZ002")
    assert len(issues) == 1
    assert issues[0].level == "FATAL"
    assert issues[0].evidence["reason"] == "missing_operand"
    assert issues[0].evidence["missing_keys"] == ["fiscal_grant_expenditure_total"]


def test_revenue_composition():
    facts = dict(BALANCED, budget_revenue_fiscal=60.0, budget_revenue_business=30.0)
    issues = _issues(validate(_context(facts)), "BUDGET.RZ003")
    assert len(issues) == 1
    assert issues[0].evidence["components_sum"] == 90.0
    assert issues[0].evidence["diff"] == 10.0

    facts.pop("budget_revenue_total")
    issues = _issues(validate(_context(facts)), "BUDGET.RZ003")
    assert issues[0].evidence["reason"] == "missing_operand"


def test_revenue_composition_without_any_part_is_missing_data():
    facts = {"budget_revenue_total": 100.0, "budget_expenditure_total": 100.0}
    issues = _issues(validate(_context(facts)), "BUDGET.RZ003")
    assert len(issues) == 1
    assert issues[0].level == "FATAL"
    assert issues[0].evidence["reason"] == "missing_operand"
    assert issues[0].evidence["missing_keys"] == [
        "budget_revenue_fiscal", "budget_revenue_business", "budget_revenue_operation", "budget_revenue_other",
    ]
    assert "diff" not in issues[0].evidence


def test_required_manual_inputs_yield_one_issue():
    manual = _filled_manual_inputs()
    manual.pop("glossary")
    manual["main_functions"] = ManualInput(key="main_functions", value_text="   ")
    manual["project_cycle"] = ManualInput(key="project_cycle", value_numeric=3.0)
    issues = _issues(validate(_context(BALANCED, manual=manual)), "BUDGET.RZ004")
    assert len(issues) == 1
    assert [item["key"] for item in issues[0].evidence["missing_keys"]] == ["main_functions", "glossary"]
    assert "主要职能" in issues[0].message

    empty = _issues(validate(_context(BALANCED, manual={})), "BUDGET.RZ004")
    assert len(empty) == 1
    assert len(empty[0].evidence["missing_keys"]) == len(REQUIRED_MANUAL_KEYS)


def test_required_keys_can_be_narrowed():
    ctx = _context(BALANCED, manual={}, required_manual_keys=[("main_functions", "主要职能")])
    issues = _issues(validate(ctx), "BUDGET.RZ004")
    assert issues[0].evidence["anchor"] == "manual_inputs:main_functions"


def test_summary_text_consistency_warns():
    manual = _filled_manual_inputs()
    manual["summary_revenue_text"] = ManualInput(key="summary_revenue_text", value_text="本年收入100.5万元", evidence={"page": 2})
    issues = _issues(validate(_context(BALANCED, manual=manual)), "BUDGET.RZ005")
    assert len(issues) == 1
    assert issues[0].level == "WARNING"
    assert issues[0].evidence["text_value"] == 100.5
    assert issues[0].evidence["manual_evidence"] == {"page": 2}


def test_line_item_layout_suggestion():
    items = [LineItem(f"k{i}", f"条目{i}", 1.0, 1.0) for i in range(11)]
    issues = _issues(validate(_context(BALANCED, line_items=items)), "BUDGET.RZ006")
    assert len(issues) == 1
    assert issues[0].level == "SUGGEST"

    configs = [RuleConfig(rule_id="BUDGET.RZ006", params={"line_item_threshold": 20})]
    assert _issues(validate(_context(BALANCED, line_items=items), configs), "BUDGET.RZ006") == []


def test_placeholder_tokens():
    assert contains_placeholder("原因：XX")
    assert contains_placeholder("tbd")
    assert not contains_placeholder("人员增加")
    assert not contains_placeholder(None)

    manual = _filled_manual_inputs()
    manual["budget_change_reason"] = ManualInput(key="budget_change_reason", value_text="主要原因是XXX")
    items = [LineItem("a", "人员经费", 1.0, 1.0, "待补充")]
    issues = _issues(validate(_context(BALANCED, manual=manual, line_items=items)), "BUDGET.RZ007")
    assert len(issues) == 1
    assert issues[0].evidence["manual_keys"] == ["budget_change_reason"]
    assert issues[0].evidence["line_item_keys"] == ["a"]


def test_expenditure_composition_only_when_all_operands_known():
    facts = dict(BALANCED, budget_expenditure_basic=60.0)
    assert _issues(validate(_context(facts)), "BUDGET.RZ008") == []
    facts["budget_expenditure_project"] = 30.0
    issues = _issues(validate(_context(facts)), "BUDGET.RZ008")
    assert len(issues) == 1
    assert issues[0].level == "FATAL"


def test_three_public_composition_warns():
    facts = dict(
        BALANCED,
        three_public_total=37.91,
        three_public_outbound=1.35,
        three_public_reception=21.56,
        three_public_vehicle_total=15.0,
    )
    assert _issues(validate(_context(facts)), "BUDGET.RZ009") == []
    facts["three_public_total"] = 40.0
    issues = _issues(validate(_context(facts)), "BUDGET.RZ009")
    assert [issue.level for issue in issues] == ["WARNING"]


def test_year_over_year_deviation():
    ctx = _context(BALANCED, previous={"budget_revenue_total": 50.0, "budget_expenditure_total": 90.0})
    issues = _issues(validate(ctx), "BUDGET.RZ010")
    assert [issue.evidence["keys"] for issue in issues] == [["budget_revenue_total"]]
    assert issues[0].evidence["prev_year"] == 2023

    configs = {"BUDGET.RZ010": RuleConfig(rule_id="BUDGET.RZ010", params={"ratio_threshold": 1.5})}
    assert _issues(validate(ctx, configs), "BUDGET.RZ010") == []


def test_reason_required_for_large_changes():
    label = "人员经费"
    items = [
        LineItem("missing", label, 120.0, 100.0),
        LineItem("auto", label, 120.0, 100.0, build_default_reason_text(label, 120.0, 100.0)),
        LineItem("flagged_auto", label, 120.0, 100.0, "人员增加", reason_is_manual=False),
        LineItem("manual", label, 120.0, 100.0, "人员增加"),
        LineItem("small", label, 105.0, 100.0),
        LineItem("from_zero", label, 5.0, 0.0),
    ]
    issues = _issues(validate(_context(BALANCED, line_items=items)), "REASON_REQUIRED_MISSING")
    assert [issue.evidence["item_key"] for issue in issues] == ["missing", "auto", "flagged_auto", "from_zero"]
    assert issues[0].evidence["anchor"] == "line_items_reason:missing"

    relaxed = _context(BALANCED, line_items=items, reason_threshold=0.5)
    keys = [issue.evidence["item_key"] for issue in _issues(validate(relaxed), "REASON_REQUIRED_MISSING")]
    assert keys == ["from_zero"]


def test_failing_rule_is_isolated():
    def explode(ctx, config):
        raise KeyError("broken")

    rules = (Rule("CUSTOM.BROKEN", "WARNING", "broken", "always fails", explode),) + RULES
    facts = dict(BALANCED, budget_expenditure_total=100.5)
    issues = evaluate_rules(_context(facts), rules=rules)
    broken = _issues(issues, "CUSTOM.BROKEN")
    assert len(broken) == 1
    assert broken[0].level == "FATAL"
    assert broken[0].evidence == {"anchor": "rule_error:CUSTOM.BROKEN", "error": "KeyError"}
    assert len(_issues(issues, "BUDGET.RZ001")) == 1


def test_rule_config_disable_level_and_tolerance_overrides():
    facts = dict(BALANCED, budget_expenditure_total=100.02, budget_expenditure_basic=60.0, budget_expenditure_project=30.0)
    ctx = _context(facts)
    configs = [
        {"rule_id": "BUDGET.RZ001", "params": {"tolerance": 0.05}},
        {"rule_id": "BUDGET.RZ008", "level_override": "warn"},
        {"rule_id": "BUDGET.RZ004", "is_enabled": False},
    ]
    result = validate(ctx, configs)
    assert _issues(result, "BUDGET.RZ001") == []
    rz008 = _issues(result, "BUDGET.RZ008")
    assert [issue.level for issue in rz008] == ["WARNING"]
    assert result.fatal_count == 0
    assert result.warning_count == 1
    assert can_generate_report(result)


def test_every_issue_carries_draft_id():
    result = validate(_context({}, draft_id=9))
    assert result.draft_id == 9
    assert result.issues
    assert {issue.draft_id for issue in result.issues} == {9}
    assert result.to_dict()["fatal_count"] == result.fatal_count


def test_run_validation_replaces_stored_issues():
    with FactStore() as store:
        draft_id = store.create_draft("u1", 2024)
        store.upsert_fact_unless_locked(Fact("u1", 2024, "FINAL", "budget_revenue_total", 100.0))
        store.upsert_fact_unless_locked(Fact("u1", 2024, "FINAL", "budget_expenditure_total", 100.5))
        first = run_validation(store, draft_id)
        assert len(_issues(store.list_issues(draft_id), "BUDGET.RZ001")) == 1
        assert len(store.list_issues(draft_id)) == len(first.issues)

        store.upsert_fact_unless_locked(Fact("u1", 2024, "FINAL", "budget_expenditure_total", 100.0))
        second = run_validation(store, draft_id)
        assert _issues(store.list_issues(draft_id), "BUDGET.RZ001") == []
        assert len(store.list_issues(draft_id)) == len(second.issues)
        assert not can_generate_report(second)


def test_load_context_reads_rule_params_and_previous_year():
    with FactStore() as store:
        draft_id = store.create_draft("u1", 2024)
        store.upsert_fact_unless_locked(Fact("u1", 2023, "FINAL", "budget_revenue_total", 80.0))
        store.save_rule_config(RuleConfig(rule_id="BUDGET.RZ004", params={"required_keys": ["glossary", {"key": "extra", "label": "补充"}]}))
        store.save_rule_config(RuleConfig(rule_id="REASON_REQUIRED_MISSING", params={"threshold": 0.3}))
        ctx = load_context(store, draft_id)
        assert ctx.required_manual_keys == [("glossary", "名词解释"), ("extra", "补充")]
        assert ctx.reason_threshold == 0.3
        assert ctx.previous_facts_by_key["budget_revenue_total"].value_numeric == 80.0
        assert ctx.year == 2024
