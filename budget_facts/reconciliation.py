from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .config import AppConfig
from .labels import KeyResolver
from .models import (
    MANUAL_PARSE,
    STRUCTURED_TABLE,
    CandidateValue,
    ConflictEntry,
    Fact,
    ManualPair,
    ReconcileResult,
    ScaleNormalization,
)
from .numbers import round2
from .store import FactStore, check_scope


SCALE_MISMATCH = "scale_mismatch"
AUTO_FACT_PROTECTED = "auto_fact_protected"
STRUCTURED_DUPLICATE = "structured_duplicate"
MANUAL_DUPLICATE = "manual_duplicate"

# manual key -> key whose known value tells us what magnitude to expect
ANCHOR_KEYS: Mapping[str, str] = MappingProxyType({
    "budget_revenue_fiscal": "fiscal_grant_revenue_total",
    "fiscal_grant_revenue_total": "budget_revenue_fiscal",
    "budget_expenditure_total": "budget_revenue_total",
    "budget_revenue_total": "budget_expenditure_total",
    "fiscal_grant_expenditure_total": "fiscal_grant_revenue_total",
    "fiscal_grant_expenditure_general": "fiscal_grant_expenditure_total",
})

SMALL_AMOUNT_KEYS = frozenset({
    "three_public_total",
    "three_public_outbound",
    "three_public_reception",
    "three_public_vehicle_total",
    "three_public_vehicle_purchase",
    "three_public_vehicle_operation",
})


@dataclass(frozen=True)
class ReconcileSettings:
    agreement_tolerance: float = 0.01
    scale_ratio: float = 10000.0
    scale_ratio_tolerance: float = 1.0
    scale_inverse_ratio_tolerance: float = 0.000001
    large_amount_threshold: float = 10000000.0
    small_amount_guard: float = 1000.0
    anchor_band: float = 10.0

    @classmethod
    def from_config(cls, config: AppConfig) -> "ReconcileSettings":
        return cls(
            agreement_tolerance=config.agreement_tolerance,
            scale_ratio=config.scale_ratio,
            scale_ratio_tolerance=config.scale_ratio_tolerance,
            scale_inverse_ratio_tolerance=config.scale_inverse_ratio_tolerance,
            large_amount_threshold=config.large_amount_threshold,
            small_amount_guard=config.small_amount_guard,
        )


def classify_disagreement(manual: float, structured: float, settings: ReconcileSettings) -> Tuple[str, Optional[float]]:
    if structured == 0:
        return AUTO_FACT_PROTECTED, None
    ratio = manual / structured
    if abs(ratio - settings.scale_ratio) <= settings.scale_ratio_tolerance:
        return SCALE_MISMATCH, ratio
    if abs(ratio - 1 / settings.scale_ratio) <= settings.scale_inverse_ratio_tolerance:
        return SCALE_MISMATCH, ratio
    return AUTO_FACT_PROTECTED, ratio


def _label_unit_scale(raw_label: str) -> Optional[Tuple[float, str]]:
    text = "".join(str(raw_label or "").split())
    if "万元" in text:
        return 1.0, "label_unit_wanyuan"
    if "千元" in text:
        return 0.1, "label_unit_qianyuan"
    if "元" in text:
        return 1 / 10000, "label_unit_yuan"
    return None


def normalize_manual_value(
    key: str,
    raw_label: str,
    raw_value: float,
    anchor_value: Optional[float],
    settings: ReconcileSettings,
) -> List[Tuple[float, str]]:
    """Scale a manual value with no structured counterpart into 万元.

    Returns the sequence of ``(value, reason)`` steps; the last value is the
    accepted one.
    """
    steps: List[Tuple[float, str]] = []
    value: Optional[float] = None

    if anchor_value:
        ratio = abs(raw_value / anchor_value)
        low = settings.scale_ratio / settings.anchor_band
        high = settings.scale_ratio * settings.anchor_band
        if low <= ratio <= high:
            value = raw_value / settings.scale_ratio
            steps.append((value, "anchor_rescaled"))
        elif 1 / settings.anchor_band <= ratio <= settings.anchor_band:
            value = raw_value
            steps.append((value, "anchor_consistent"))

    if value is None:
        by_label = _label_unit_scale(raw_label)
        if by_label is not None:
            value = raw_value * by_label[0]
            steps.append((value, by_label[1]))
        elif abs(raw_value) >= settings.large_amount_threshold:
            value = raw_value / settings.scale_ratio
            steps.append((value, "magnitude_yuan"))
        else:
            value = raw_value
            steps.append((value, "assumed_canonical"))

    if key in SMALL_AMOUNT_KEYS and abs(value) >= settings.small_amount_guard:
        value = value / settings.scale_ratio
        steps.append((value, "small_amount_guard"))
    return steps


def _coerce_structured(candidate: Union[CandidateValue, Dict[str, Any]]) -> CandidateValue:
    if isinstance(candidate, CandidateValue):
        return candidate
    return CandidateValue(
        key=str(candidate["key"]),
        raw_label=str(candidate.get("raw_label") or ""),
        numeric_value=float(candidate["numeric_value"]),
        source=STRUCTURED_TABLE,
        source_reference=dict(candidate.get("source_reference") or {}),
    )


def _coerce_manual(candidate: Union[CandidateValue, ManualPair, Dict[str, Any]]) -> ManualPair:
    if isinstance(candidate, ManualPair):
        return candidate
    if isinstance(candidate, CandidateValue):
        page = (candidate.source_reference or {}).get("page")
        return ManualPair(label=candidate.raw_label, numeric_value=candidate.numeric_value, page=page)
    return ManualPair.model_validate(candidate)


def _anchor_value(
    store: FactStore,
    unit_id: str,
    year: int,
    stage: str,
    key: str,
    structured: Mapping[str, CandidateValue],
) -> Optional[float]:
    anchor_key = ANCHOR_KEYS.get(key)
    if anchor_key is None:
        return None
    if anchor_key in structured:
        return structured[anchor_key].numeric_value
    return store.find_anchor_value(unit_id, year, anchor_key, stage=stage)


def reconcile(
    store: FactStore,
    unit_id: str,
    year: int,
    structured_candidates: Iterable[Union[CandidateValue, Dict[str, Any]]],
    manual_candidates: Iterable[Union[CandidateValue, ManualPair, Dict[str, Any]]],
    stage: str = "FINAL",
    resolver: Optional[KeyResolver] = None,
    settings: Optional[ReconcileSettings] = None,
) -> ReconcileResult:
    """Merge structured and manual candidates for one unit/year and persist them.

    Structured values always win; every disagreement is reported in
    ``conflicts`` and every locked key in ``skipped_locked``. All writes share
    one transaction.
    """
    check_scope(unit_id, year, stage)
    resolver = resolver or KeyResolver()
    settings = settings or ReconcileSettings()
    tolerance = settings.agreement_tolerance
    result = ReconcileResult()

    structured: Dict[str, CandidateValue] = {}
    for item in structured_candidates or []:
        candidate = _coerce_structured(item)
        kept = structured.get(candidate.key)
        if kept is None:
            structured[candidate.key] = candidate
        elif abs(kept.numeric_value - candidate.numeric_value) > tolerance:
            result.conflicts.append(ConflictEntry(
                key=candidate.key,
                reason=STRUCTURED_DUPLICATE,
                kept_value=kept.numeric_value,
                rejected_value=candidate.numeric_value,
                raw_label=candidate.raw_label,
            ))

    accepted: Dict[str, Tuple[ManualPair, float, str]] = {}
    for item in manual_candidates or []:
        pair = _coerce_manual(item)
        key = resolver.resolve(pair.label)
        if key is None:
            result.unmatched_labels.append(pair.label)
            continue
        raw = pair.numeric_value

        if key in structured:
            kept_value = structured[key].numeric_value
            if abs(raw - kept_value) <= tolerance:
                continue
            reason, ratio = classify_disagreement(raw, kept_value, settings)
            result.conflicts.append(ConflictEntry(
                key=key,
                reason=reason,
                kept_value=kept_value,
                rejected_value=raw,
                raw_label=pair.label,
                ratio=ratio,
            ))
            continue

        anchor = _anchor_value(store, unit_id, year, stage, key, structured)
        steps = normalize_manual_value(key, pair.label, raw, anchor, settings)
        value = round2(steps[-1][0])
        for step_value, reason in steps:
            result.scale_decisions.append(ScaleNormalization(
                key=key,
                raw_label=pair.label,
                raw_value=raw,
                normalized_value=round2(step_value),
                reason=reason,
            ))

        if key in accepted:
            first_value = accepted[key][1]
            if abs(first_value - value) > tolerance:
                result.conflicts.append(ConflictEntry(
                    key=key,
                    reason=MANUAL_DUPLICATE,
                    kept_value=first_value,
                    rejected_value=value,
                    raw_label=pair.label,
                ))
            continue
        accepted[key] = (pair, value, steps[-1][1])

    facts: List[Fact] = []
    for key, candidate in structured.items():
        facts.append(Fact(
            unit_id=str(unit_id),
            year=year,
            stage=stage,
            key=key,
            value_numeric=round2(candidate.numeric_value),
            provenance_source=STRUCTURED_TABLE,
            source_reference=dict(candidate.source_reference or {}),
        ))
    for key, (pair, value, reason) in accepted.items():
        reference: Dict[str, Any] = {
            "raw_label": pair.label,
            "raw_value": pair.numeric_value,
            "scale_reason": reason,
        }
        if pair.page is not None:
            reference["page"] = pair.page
        facts.append(Fact(
            unit_id=str(unit_id),
            year=year,
            stage=stage,
            key=key,
            value_numeric=value,
            provenance_source=MANUAL_PARSE,
            source_reference=reference,
        ))

    with store.transaction():
        for fact in facts:
            if store.upsert_fact_unless_locked(fact):
                result.facts_written.append(fact)
            else:
                result.skipped_locked.append(fact.key)
        stored = store.get_facts(unit_id, year, stage=stage)
    result.facts = {key: fact.value_numeric for key, fact in stored.items()}
    return result
