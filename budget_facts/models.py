import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


STRUCTURED_TABLE = "structured_table"
MANUAL_PARSE = "manual_parse"

FATAL = "FATAL"
WARNING = "WARNING"
SUGGEST = "SUGGEST"
ISSUE_LEVELS = (FATAL, WARNING, SUGGEST)


def normalize_level(level: Optional[str]) -> Optional[str]:
    if level is None:
        return None
    text = str(level).strip().upper()
    if text == "WARN":
        return WARNING
    return text or None


@dataclass
class ScaleDecision:
    scale: float
    reason: str
    unit: Optional[str] = None


@dataclass
class CandidateValue:
    key: str
    raw_label: str
    numeric_value: float
    source: str
    source_reference: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Fact:
    unit_id: str
    year: int
    stage: str
    key: str
    value_numeric: Optional[float]
    is_locked: bool = False
    provenance_source: str = STRUCTURED_TABLE
    source_reference: Dict[str, Any] = field(default_factory=dict)

    @property
    def evidence_cells(self) -> List[Dict[str, Any]]:
        cells = (self.source_reference or {}).get("cells") or []
        return [dict(cell) for cell in cells if isinstance(cell, dict)]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConflictEntry:
    key: str
    reason: str
    kept_value: float
    rejected_value: float
    raw_label: str = ""
    ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScaleNormalization:
    key: str
    raw_label: str
    raw_value: float
    normalized_value: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconcileResult:
    facts: Dict[str, float] = field(default_factory=dict)
    facts_written: List[Fact] = field(default_factory=list)
    skipped_locked: List[str] = field(default_factory=list)
    unmatched_labels: List[str] = field(default_factory=list)
    conflicts: List[ConflictEntry] = field(default_factory=list)
    scale_decisions: List[ScaleNormalization] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facts": dict(self.facts),
            "facts_written": [fact.to_dict() for fact in self.facts_written],
            "skipped_locked": list(self.skipped_locked),
            "unmatched_labels": list(self.unmatched_labels),
            "conflicts": [entry.to_dict() for entry in self.conflicts],
            "scale_decisions": [entry.to_dict() for entry in self.scale_decisions],
        }


@dataclass
class ValidationIssue:
    rule_id: str
    level: Optional[str]
    message: str
    tolerance: float
    evidence: Dict[str, Any]
    draft_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationResult:
    draft_id: Optional[int]
    issues: List[ValidationIssue] = field(default_factory=list)

    def count(self, level: str) -> int:
        return sum(1 for issue in self.issues if issue.level == level)

    @property
    def fatal_count(self) -> int:
        return self.count(FATAL)

    @property
    def warning_count(self) -> int:
        return self.count(WARNING)

    @property
    def suggest_count(self) -> int:
        return self.count(SUGGEST)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "draft_id": self.draft_id,
            "fatal_count": self.fatal_count,
            "warning_count": self.warning_count,
            "suggest_count": self.suggest_count,
            "issues": [issue.to_dict() for issue in self.issues],
        }


class TableGrid(BaseModel):
    table_key: str = "unknown"
    rows: List[List[Any]] = Field(default_factory=list)
    page: Optional[int] = None

    @field_validator("table_key", mode="before")
    @classmethod
    def _default_key(cls, value: Any) -> str:
        text = str(value or "").strip()
        return text or "unknown"

    @field_validator("rows", mode="before")
    @classmethod
    def _coerce_rows(cls, value: Any) -> List[List[Any]]:
        if value is None:
            return []
        return [list(row) if isinstance(row, (list, tuple)) else [row] for row in value]


class ManualPair(BaseModel):
    label: str = ""
    numeric_value: float
    page: Optional[int] = None

    @field_validator("numeric_value")
    @classmethod
    def _finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("numeric_value must be finite")
        return value


class RuleConfig(BaseModel):
    rule_id: str
    is_enabled: bool = True
    level_override: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("level_override", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> Optional[str]:
        level = normalize_level(value)
        if level is not None and level not in ISSUE_LEVELS:
            raise ValueError(f"Unsupported level: {value}")
        return level

    @field_validator("params", mode="before")
    @classmethod
    def _default_params(cls, value: Any) -> Dict[str, Any]:
        return dict(value or {})
