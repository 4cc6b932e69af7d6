import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .config import AppConfig, load_config
from .line_items import LineItem
from .llm_client import LLMClient
from .manual_extractor import extract_manual_candidates
from .models import ManualPair, TableGrid
from .reconciliation import ReconcileSettings, reconcile
from .run_logger import log_step
from .store import FactStore
from .tables import extract_structured_candidates
from .validation import can_generate_report, run_validation


def _manual_input_kwargs(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return {
            "value_text": value.get("value_text"),
            "value_numeric": value.get("value_numeric"),
            "value_json": value.get("value_json"),
            "evidence": value.get("evidence"),
        }
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return {"value_numeric": float(value)}
    if isinstance(value, (list, tuple)):
        return {"value_json": list(value)}
    return {"value_text": None if value is None else str(value)}


def _line_item(value: Union[LineItem, Dict[str, Any]], index: int) -> LineItem:
    if isinstance(value, LineItem):
        return value
    item = LineItem(**value)
    if not item.order_no:
        item.order_no = index
    return item


def run_pipeline(
    store: FactStore,
    unit_id: str,
    year: int,
    tables: Iterable[Union[TableGrid, Dict[str, Any]]],
    output_dir: Optional[Path],
    pages: Optional[List[Dict[str, Any]]] = None,
    manual_pairs: Optional[Iterable[Union[ManualPair, Dict[str, Any]]]] = None,
    manual_inputs: Optional[Mapping[str, Any]] = None,
    line_items: Optional[Iterable[Union[LineItem, Dict[str, Any]]]] = None,
    llm=None,
    stage: str = "FINAL",
    settings: Optional[ReconcileSettings] = None,
) -> Dict[str, Any]:
    structured = extract_structured_candidates(tables)
    log_step(output_dir, "structured_candidates", {
        "count": len(structured),
        "values": {candidate.key: candidate.numeric_value for candidate in structured},
    })

    manual: List[Any] = list(manual_pairs or [])
    if pages:
        manual.extend(extract_manual_candidates(pages, llm=llm))
    log_step(output_dir, "manual_candidates", {"count": len(manual)})

    reconciled = reconcile(
        store,
        unit_id,
        year,
        structured,
        manual,
        stage=stage,
        settings=settings,
    )
    log_step(output_dir, "reconciliation", {
        "facts_written": len(reconciled.facts_written),
        "skipped_locked": reconciled.skipped_locked,
        "unmatched_labels": reconciled.unmatched_labels,
        "conflicts": [entry.to_dict() for entry in reconciled.conflicts],
    })

    draft_id = store.create_draft(unit_id, year, stage=stage)
    with store.transaction():
        for key, value in (manual_inputs or {}).items():
            store.set_manual_input(draft_id, key, **_manual_input_kwargs(value))
        if line_items is not None:
            store.save_line_items(draft_id, [_line_item(item, i) for i, item in enumerate(line_items)])

    validation = run_validation(store, draft_id)
    log_step(output_dir, "validation", {
        "draft_id": draft_id,
        "fatal_count": validation.fatal_count,
        "warning_count": validation.warning_count,
        "suggest_count": validation.suggest_count,
    })

    report = {
        "draft_id": draft_id,
        "reconciliation": reconciled.to_dict(),
        "validation": validation.to_dict(),
        "can_generate_report": can_generate_report(validation),
    }
    if output_dir is not None:
        output_dir.mkdir(parents=True, exist_ok=True)
        _write_json(output_dir / "reconciliation.json", report["reconciliation"])
        _write_json(output_dir / "validation.json", report["validation"])
    return report


def run_pipeline_from_config(
    unit_id: str,
    year: int,
    tables: Iterable[Union[TableGrid, Dict[str, Any]]],
    config: Optional[AppConfig] = None,
    **kwargs: Any,
) -> Dict[str, Any]:
    config = config or load_config()
    llm = kwargs.pop("llm", None)
    if llm is None and kwargs.get("pages") and config.llm_api_key:
        llm = LLMClient.from_config(config)
    output_dir = config.output_dir / f"{unit_id}_{year}"
    with FactStore(config.db_path) as store:
        return run_pipeline(
            store,
            unit_id,
            year,
            tables,
            output_dir,
            llm=llm,
            settings=ReconcileSettings.from_config(config),
            **kwargs,
        )


def _write_json(path: Path, payload: Dict[str, Any]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
