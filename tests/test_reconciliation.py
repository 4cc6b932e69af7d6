import pytest

from budget_facts.config import load_config
from budget_facts.models import CandidateValue, Fact, ManualPair
from budget_facts.reconciliation import (
    AUTO_FACT_PROTECTED,
    MANUAL_DUPLICATE,
    SCALE_MISMATCH,
    STRUCTURED_DUPLICATE,
    ReconcileSettings,
    classify_disagreement,
    normalize_manual_value,
    reconcile,
)
from budget_facts.store import FactStore
from budget_facts.tables import extract_structured_candidates


@pytest.fixture
def store():
    with FactStore() as db:
        yield db


def _structured(key, value):
    return CandidateValue(
        key=key,
        raw_label="",
        numeric_value=value,
        source="structured_table",
        source_reference={"cells": [{"table_key": "budget_summary", "row": 1, "col": 1}]},
    )


def test_scale_mismatch_keeps_structured_value(store):
    result = reconcile(
        store, "u1", 2024,
        [_structured("budget_revenue_fiscal", 90.0)],
        [{"label": "财政拨款收入", "numeric_value": 900000}],
    )
    assert result.facts["budget_revenue_fiscal"] == 90.0
    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.reason == SCALE_MISMATCH
    assert conflict.kept_value == 90.0
    assert conflict.rejected_value == 900000
    assert conflict.ratio == pytest.approx(10000)
    assert store.get_fact("u1", 2024, "budget_revenue_fiscal").provenance_source == "structured_table"


def test_other_disagreement_protects_structured_value(store):
    result = reconcile(
        store, "u1", 2024,
        [_structured("budget_revenue_total", 90.0)],
        [ManualPair(label="收入总计", numeric_value=95.0)],
    )
    assert result.facts["budget_revenue_total"] == 90.0
    assert [c.reason for c in result.conflicts] == [AUTO_FACT_PROTECTED]


def test_agreeing_values_produce_no_conflict(store):
    result = reconcile(
        store, "u1", 2024,
        [_structured("budget_revenue_total", 90.0)],
        [ManualPair(label="收入总计", numeric_value=90.005)],
    )
    assert result.conflicts == []
    assert result.scale_decisions == []


def test_classify_disagreement_boundaries():
    settings = ReconcileSettings()
    assert classify_disagreement(900000.5, 90.0, settings)[0] == SCALE_MISMATCH
    assert classify_disagreement(0.009, 90.0, settings)[0] == SCALE_MISMATCH
    assert classify_disagreement(910000.0, 90.0, settings)[0] == AUTO_FACT_PROTECTED
    assert classify_disagreement(5.0, 0.0, settings) == (AUTO_FACT_PROTECTED, None)


def test_locked_fact_is_reported_and_left_untouched(store):
    store.upsert_fact_unless_locked(Fact("u1", 2024, "FINAL", "budget_revenue_total", 50.0))
    store.lock_facts("u1", 2024)
    result = reconcile(
        store, "u1", 2024,
        [_structured("budget_revenue_total", 90.0), _structured("budget_expenditure_total", 90.0)],
        [],
    )
    assert result.skipped_locked == ["budget_revenue_total"]
    assert [fact.key for fact in result.facts_written] == ["budget_expenditure_total"]
    assert result.facts == {"budget_revenue_total": 50.0, "budget_expenditure_total": 90.0}


def test_unmatched_labels_are_collected(store):
    result = reconcile(store, "u1", 2024, [], [ManualPair(label="备注", numeric_value=3)])
    assert result.unmatched_labels == ["备注"]
    assert result.facts == {}


def test_manual_value_rescaled_against_structured_anchor(store):
    result = reconcile(
        store, "u1", 2024,
        [_structured("fiscal_grant_revenue_total", 100.0)],
        [ManualPair(label="财政拨款收入", numeric_value=1000000, page=7)],
    )
    assert result.facts["budget_revenue_fiscal"] == 100.0
    assert [d.reason for d in result.scale_decisions] == ["anchor_rescaled"]
    fact = store.get_fact("u1", 2024, "budget_revenue_fiscal")
    assert fact.provenance_source == "manual_parse"
    assert fact.source_reference == {
        "raw_label": "财政拨款收入",
        "raw_value": 1000000.0,
        "scale_reason": "anchor_rescaled",
        "page": 7,
    }


def test_manual_value_consistent_with_stored_anchor(store):
    store.upsert_fact_unless_locked(Fact("u1", 2023, "FINAL", "fiscal_grant_revenue_total", 100.0))
    result = reconcile(store, "u1", 2024, [], [ManualPair(label="财政拨款收入", numeric_value=105.0)])
    assert result.facts["budget_revenue_fiscal"] == 105.0
    assert result.scale_decisions[0].reason == "anchor_consistent"


def test_label_unit_magnitude_and_small_amount_guard(store):
    result = reconcile(store, "u1", 2024, [], [
        ManualPair(label="因公出国（境）费（元）", numeric_value=50000),
        ManualPair(label="公务接待费", numeric_value=21560),
        ManualPair(label="收入总计", numeric_value=189767551),
        ManualPair(label="项目支出", numeric_value=12.5),
    ])
    assert result.facts["three_public_outbound"] == 5.0
    assert result.facts["three_public_reception"] == 2.16
    assert result.facts["budget_revenue_total"] == 18976.76
    assert result.facts["budget_expenditure_project"] == 12.5
    reasons = [(d.key, d.reason) for d in result.scale_decisions]
    assert ("three_public_outbound", "label_unit_yuan") in reasons
    assert ("three_public_reception", "assumed_canonical") in reasons
    assert ("three_public_reception", "small_amount_guard") in reasons
    assert ("budget_revenue_total", "magnitude_yuan") in reasons


def test_normalize_manual_value_steps():
    settings = ReconcileSettings()
    assert normalize_manual_value("budget_revenue_total", "收入总计（千元）", 1000, None, settings) == [(100.0, "label_unit_qianyuan")]
    assert normalize_manual_value("budget_revenue_total", "收入总计", 5, 100.0, settings) == [(5, "assumed_canonical")]


def test_duplicates_keep_first_value(store):
    result = reconcile(
        store, "u1", 2024,
        [_structured("budget_revenue_total", 90.0), _structured("budget_revenue_total", 91.0)],
        [ManualPair(label="支出总计", numeric_value=100), ManualPair(label="支出合计", numeric_value=120)],
    )
    assert result.facts["budget_revenue_total"] == 90.0
    assert result.facts["budget_expenditure_total"] == 100.0
    assert [(c.key, c.reason) for c in result.conflicts] == [
        ("budget_revenue_total", STRUCTURED_DUPLICATE),
        ("budget_expenditure_total", MANUAL_DUPLICATE),
    ]


def test_reconcile_writes_are_atomic():
    class FlakyStore(FactStore):
        calls = 0

        def upsert_fact_unless_locked(self, fact):
            FlakyStore.calls += 1
            if FlakyStore.calls == 2:
                raise RuntimeError("disk full")
            return super().upsert_fact_unless_locked(fact)

    with FlakyStore() as db:
        with pytest.raises(RuntimeError):
            reconcile(
                db, "u1", 2024,
                [_structured("budget_revenue_total", 1.0), _structured("budget_expenditure_total", 1.0)],
                [],
            )
        assert db.get_facts("u1", 2024) == {}


def test_reconcile_rejects_bad_scope(store):
    with pytest.raises(ValueError):
        reconcile(store, "", 2024, [], [])


def test_structured_candidates_from_tables_flow_into_facts(store):
    candidates = extract_structured_candidates(
        [{"table_key": "budget_summary", "rows": [["单位：万元"], ["收入总计", "10", "支出总计", "10"]]}],
        derive_totals=False,
    )
    result = reconcile(store, "u1", 2024, candidates, [CandidateValue("收入总计", "收入总计", 10.0, "manual_parse")])
    assert result.conflicts == []
    fact = store.get_fact("u1", 2024, "budget_revenue_total")
    assert fact.evidence_cells == [{"table_key": "budget_summary", "row": 1, "col": 1}]


def test_settings_follow_config(monkeypatch):
    monkeypatch.setenv("SCALE_RATIO", "1000")
    monkeypatch.setenv("AGREEMENT_TOLERANCE", "0.5")
    settings = ReconcileSettings.from_config(load_config())
    assert settings.scale_ratio == 1000.0
    assert settings.agreement_tolerance == 0.5
    assert classify_disagreement(9000.0, 9.0, settings)[0] == SCALE_MISMATCH
