import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from .errors import DraftNotFoundError
from .line_items import LineItem
from .manual_inputs import ManualInput, sanitize_manual_text
from .models import Fact, RuleConfig, ValidationIssue, normalize_level


SCHEMA = """
CREATE TABLE IF NOT EXISTS facts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    unit_id TEXT NOT NULL,
    year INTEGER NOT NULL,
    stage TEXT NOT NULL,
    key TEXT NOT NULL,
    value_numeric REAL,
    is_locked INTEGER NOT NULL DEFAULT 0,
    provenance_source TEXT,
    source_reference TEXT,
    updated_at REAL,
    UNIQUE (unit_id, year, stage, key)
);

CREATE TABLE IF NOT EXISTS drafts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    unit_id TEXT NOT NULL,
    year INTEGER NOT NULL,
    stage TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'DRAFT',
    created_at REAL
);

CREATE TABLE IF NOT EXISTS manual_inputs (
    draft_id INTEGER NOT NULL REFERENCES drafts(id) ON DELETE CASCADE,
    key TEXT NOT NULL,
    value_text TEXT,
    value_numeric REAL,
    value_json TEXT,
    evidence TEXT,
    updated_at REAL,
    PRIMARY KEY (draft_id, key)
);

CREATE TABLE IF NOT EXISTS line_items (
    draft_id INTEGER NOT NULL REFERENCES drafts(id) ON DELETE CASCADE,
    item_key TEXT NOT NULL,
    item_label TEXT NOT NULL,
    amount_current REAL,
    amount_prev REAL,
    reason_text TEXT,
    reason_is_manual INTEGER,
    order_no INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (draft_id, item_key)
);

CREATE TABLE IF NOT EXISTS validation_issues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    draft_id INTEGER NOT NULL REFERENCES drafts(id) ON DELETE CASCADE,
    level TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    message TEXT NOT NULL,
    tolerance REAL,
    evidence TEXT,
    created_at REAL
);

CREATE TABLE IF NOT EXISTS validation_rule_config (
    rule_id TEXT PRIMARY KEY,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    level_override TEXT,
    params_json TEXT
);
"""

_UPSERT_UNLESS_LOCKED = """
INSERT INTO facts (unit_id, year, stage, key, value_numeric, is_locked, provenance_source, source_reference, updated_at)
VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
ON CONFLICT (unit_id, year, stage, key) DO UPDATE SET
    value_numeric = excluded.value_numeric,
    provenance_source = excluded.provenance_source,
    source_reference = excluded.source_reference,
    updated_at = excluded.updated_at
WHERE facts.is_locked = 0
"""


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _loads(text: Optional[str], default: Any = None) -> Any:
    if text is None or text == "":
        return default
    return json.loads(text)


def check_scope(unit_id: str, year: int, stage: str) -> None:
    if not str(unit_id or "").strip():
        raise ValueError("unit_id required")
    if not isinstance(year, int) or isinstance(year, bool):
        raise ValueError(f"year must be an int: {year!r}")
    if not str(stage or "").strip():
        raise ValueError("stage required")


class FactStore:
    """SQLite-backed store for facts, drafts, narrative inputs and validation issues.

    Write methods join an enclosing :meth:`transaction` when there is one, so a
    caller can group several writes into a single commit.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(SCHEMA)
        self._depth = 0

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "FactStore":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        if self._depth:
            self._depth += 1
            try:
                yield self._conn
            finally:
                self._depth -= 1
            return
        self._conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        self._depth = 1
        try:
            yield self._conn
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")
        finally:
            self._depth = 0

    # drafts

    def create_draft(self, unit_id: str, year: int, stage: str = "FINAL") -> int:
        check_scope(unit_id, year, stage)
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO drafts (unit_id, year, stage, created_at) VALUES (?, ?, ?, ?)",
                (str(unit_id), year, stage, time.time()),
            )
            return int(cursor.lastrowid)

    def get_draft(self, draft_id: int) -> Dict[str, Any]:
        row = self._conn.execute("SELECT * FROM drafts WHERE id = ?", (draft_id,)).fetchone()
        if row is None:
            raise DraftNotFoundError(draft_id)
        return dict(row)

    # facts

    def upsert_fact_unless_locked(self, fact: Fact) -> bool:
        """Write ``fact`` unless the stored row is locked. Returns whether a row changed."""
        check_scope(fact.unit_id, fact.year, fact.stage)
        with self.transaction() as conn:
            cursor = conn.execute(
                _UPSERT_UNLESS_LOCKED,
                (
                    str(fact.unit_id),
                    fact.year,
                    fact.stage,
                    fact.key,
                    fact.value_numeric,
                    fact.provenance_source,
                    _dumps(fact.source_reference or {}),
                    time.time(),
                ),
            )
            return cursor.rowcount > 0

    def lock_facts(self, unit_id: str, year: int, stage: str = "FINAL", keys: Optional[Iterable[str]] = None) -> int:
        check_scope(unit_id, year, stage)
        with self.transaction() as conn:
            if keys is None:
                cursor = conn.execute(
                    "UPDATE facts SET is_locked = 1 WHERE unit_id = ? AND year = ? AND stage = ?",
                    (str(unit_id), year, stage),
                )
                return cursor.rowcount
            changed = 0
            for key in keys:
                cursor = conn.execute(
                    "UPDATE facts SET is_locked = 1 WHERE unit_id = ? AND year = ? AND stage = ? AND key = ?",
                    (str(unit_id), year, stage, key),
                )
                changed += cursor.rowcount
            return changed

    def get_facts(self, unit_id: str, year: int, stage: str = "FINAL") -> Dict[str, Fact]:
        rows = self._conn.execute(
            "SELECT * FROM facts WHERE unit_id = ? AND year = ? AND stage = ? ORDER BY key",
            (str(unit_id), year, stage),
        ).fetchall()
        return {row["key"]: self._row_to_fact(row) for row in rows}

    def get_fact(self, unit_id: str, year: int, key: str, stage: str = "FINAL") -> Optional[Fact]:
        row = self._conn.execute(
            "SELECT * FROM facts WHERE unit_id = ? AND year = ? AND stage = ? AND key = ?",
            (str(unit_id), year, stage, key),
        ).fetchone()
        return self._row_to_fact(row) if row is not None else None

    def find_anchor_value(self, unit_id: str, year: int, key: str, stage: str = "FINAL") -> Optional[float]:
        """Latest known value of ``key`` for the unit, preferring the same year and stage."""
        row = self._conn.execute(
            """
            SELECT value_numeric FROM facts
            WHERE unit_id = ? AND key = ? AND year <= ? AND value_numeric IS NOT NULL
            ORDER BY (year = ?) DESC, (stage = ?) DESC, year DESC
            LIMIT 1
            """,
            (str(unit_id), key, year, year, stage),
        ).fetchone()
        return float(row["value_numeric"]) if row is not None else None

    def list_years(self, unit_id: str, stage: str = "FINAL") -> List[int]:
        rows = self._conn.execute(
            "SELECT DISTINCT year FROM facts WHERE unit_id = ? AND stage = ? ORDER BY year",
            (str(unit_id), stage),
        ).fetchall()
        return [int(row["year"]) for row in rows]

    @staticmethod
    def _row_to_fact(row: sqlite3.Row) -> Fact:
        return Fact(
            unit_id=row["unit_id"],
            year=int(row["year"]),
            stage=row["stage"],
            key=row["key"],
            value_numeric=row["value_numeric"],
            is_locked=bool(row["is_locked"]),
            provenance_source=row["provenance_source"] or "",
            source_reference=_loads(row["source_reference"], {}),
        )

    # manual inputs

    def set_manual_input(
        self,
        draft_id: int,
        key: str,
        value_text: Optional[str] = None,
        value_numeric: Optional[float] = None,
        value_json: Any = None,
        evidence: Optional[Dict[str, Any]] = None,
    ) -> ManualInput:
        self.get_draft(draft_id)
        item = ManualInput(
            key=key,
            value_text=sanitize_manual_text(key, value_text),
            value_numeric=value_numeric,
            value_json=value_json,
            evidence=dict(evidence or {}),
        )
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO manual_inputs (draft_id, key, value_text, value_numeric, value_json, evidence, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (draft_id, key) DO UPDATE SET
                    value_text = excluded.value_text,
                    value_numeric = excluded.value_numeric,
                    value_json = excluded.value_json,
                    evidence = excluded.evidence,
                    updated_at = excluded.updated_at
                """,
                (
                    draft_id,
                    key,
                    item.value_text,
                    item.value_numeric,
                    _dumps(item.value_json),
                    _dumps(item.evidence),
                    time.time(),
                ),
            )
        return item

    def get_manual_inputs(self, draft_id: int) -> Dict[str, ManualInput]:
        rows = self._conn.execute(
            "SELECT * FROM manual_inputs WHERE draft_id = ? ORDER BY key", (draft_id,)
        ).fetchall()
        return {
            row["key"]: ManualInput(
                key=row["key"],
                value_text=row["value_text"],
                value_numeric=row["value_numeric"],
                value_json=_loads(row["value_json"]),
                evidence=_loads(row["evidence"], {}),
            )
            for row in rows
        }

    # line items

    def save_line_items(self, draft_id: int, items: Iterable[LineItem]) -> int:
        self.get_draft(draft_id)
        count = 0
        with self.transaction() as conn:
            conn.execute("DELETE FROM line_items WHERE draft_id = ?", (draft_id,))
            for index, item in enumerate(items):
                conn.execute(
                    """
                    INSERT INTO line_items
                        (draft_id, item_key, item_label, amount_current, amount_prev, reason_text, reason_is_manual, order_no)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        draft_id,
                        item.item_key,
                        item.item_label,
                        item.amount_current,
                        item.amount_prev,
                        item.reason_text,
                        None if item.reason_is_manual is None else int(bool(item.reason_is_manual)),
                        item.order_no or index,
                    ),
                )
                count += 1
        return count

    def get_line_items(self, draft_id: int) -> List[LineItem]:
        rows = self._conn.execute(
            "SELECT * FROM line_items WHERE draft_id = ? ORDER BY order_no, item_key", (draft_id,)
        ).fetchall()
        return [
            LineItem(
                item_key=row["item_key"],
                item_label=row["item_label"],
                amount_current=row["amount_current"],
                amount_prev=row["amount_prev"],
                reason_text=row["reason_text"],
                reason_is_manual=None if row["reason_is_manual"] is None else bool(row["reason_is_manual"]),
                order_no=int(row["order_no"]),
            )
            for row in rows
        ]

    # validation issues

    def replace_issues(self, draft_id: int, issues: Iterable[ValidationIssue]) -> int:
        """Delete every stored issue of the draft and insert ``issues`` in one transaction."""
        count = 0
        now = time.time()
        with self.transaction() as conn:
            conn.execute("DELETE FROM validation_issues WHERE draft_id = ?", (draft_id,))
            for issue in issues:
                conn.execute(
                    """
                    INSERT INTO validation_issues (draft_id, level, rule_id, message, tolerance, evidence, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (draft_id, issue.level, issue.rule_id, issue.message, issue.tolerance, _dumps(issue.evidence), now),
                )
                count += 1
        return count

    def list_issues(self, draft_id: int, level: Optional[str] = None) -> List[ValidationIssue]:
        level = normalize_level(level)
        rows = self._conn.execute(
            """
            SELECT * FROM validation_issues
            WHERE draft_id = ? AND (? IS NULL OR level = ?)
            ORDER BY id
            """,
            (draft_id, level, level),
        ).fetchall()
        return [
            ValidationIssue(
                rule_id=row["rule_id"],
                level=row["level"],
                message=row["message"],
                tolerance=row["tolerance"],
                evidence=_loads(row["evidence"], {}),
                draft_id=row["draft_id"],
            )
            for row in rows
        ]

    # rule configuration

    def save_rule_config(self, config: RuleConfig) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO validation_rule_config (rule_id, is_enabled, level_override, params_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (rule_id) DO UPDATE SET
                    is_enabled = excluded.is_enabled,
                    level_override = excluded.level_override,
                    params_json = excluded.params_json
                """,
                (config.rule_id, int(config.is_enabled), config.level_override, _dumps(config.params)),
            )

    def load_rule_configs(self) -> Dict[str, RuleConfig]:
        rows = self._conn.execute("SELECT * FROM validation_rule_config").fetchall()
        return {
            row["rule_id"]: RuleConfig(
                rule_id=row["rule_id"],
                is_enabled=bool(row["is_enabled"]),
                level_override=row["level_override"],
                params=_loads(row["params_json"], {}),
            )
            for row in rows
        }
