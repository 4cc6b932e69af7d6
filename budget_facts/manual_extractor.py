import re
from typing import Any, Dict, Iterable, List, Optional

from .labels import normalize_label
from .models import ManualPair
from .numbers import coerce_number


MANUAL_PAIRS_SCHEMA = {
    "type": "object",
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "label": {"type": "string"},
                    "value": {"type": ["number", "string", "null"]},
                    "unit": {"type": ["string", "null"]},
                    "page": {"type": ["integer", "null"]},
                },
                "required": ["label", "value"],
            },
        }
    },
    "required": ["items"],
}

FINANCIAL_HINTS = ("收入", "支出", "拨款", "经费", "合计", "总计", "三公", "出国", "接待", "公务用车")

_PAIR_PATTERN = re.compile(
    r"(?P<label>[\u4e00-\u9fff“”\"（）()A-Za-z]{2,40}?)"
    r"\s*(?:为|是|:|：)?\s*"
    r"(?P<value>\(?-?\d[\d,]*(?:\.\d+)?\)?)"
    r"\s*(?P<unit>万元|千元|元)?"
)

MAX_PROMPT_CHARS = 12000


def _clean_label(label: str) -> str:
    label = label.strip().strip("“”\"")
    return re.sub(r"^(其中|合计中|含)[:：]?", "", label)


def parse_manual_pairs(pages: Iterable[Dict[str, Any]]) -> List[ManualPair]:
    """Pull ``label number[unit]`` pairs out of page-segmented text.

    The unit word, when present, is kept on the label so later scale
    normalization can read it.
    """
    pairs: List[ManualPair] = []
    for page in pages or []:
        text = str(page.get("text") or "")
        page_no = page.get("page")
        for line in text.splitlines():
            for match in _PAIR_PATTERN.finditer(line):
                label = _clean_label(match.group("label"))
                if not any(hint in label for hint in FINANCIAL_HINTS):
                    continue
                value = coerce_number(match.group("value"))
                if value is None:
                    continue
                unit = match.group("unit") or ""
                pairs.append(ManualPair(label=label + unit, numeric_value=value, page=page_no))
    return pairs


def _pages_prompt(pages: Iterable[Dict[str, Any]]) -> str:
    blocks = []
    for page in pages or []:
        blocks.append(f"第{page.get('page', '?')}页：\n{page.get('text') or ''}")
    return "\n\n".join(blocks)[:MAX_PROMPT_CHARS]


def extract_manual_pairs_with_llm(pages: Iterable[Dict[str, Any]], llm) -> List[ManualPair]:
    system_prompt = "你是部门预算文本解析专家，负责从说明文字中提取财务数字。"
    user_prompt = (
        "请从以下预算说明文本中抽取带金额的财务项目，例如收入总计、支出总计、"
        "财政拨款收入、基本支出、项目支出、三公经费各项、机关运行经费。"
        "label保留原文项目名称，value为原文数字，unit为原文单位（万元/元/千元），不要换算。"
        "输出JSON，包含items数组。\n\n"
        f"文本内容：\n{_pages_prompt(pages)}\n"
    )
    data = llm.generate_json(system_prompt, user_prompt, MANUAL_PAIRS_SCHEMA)
    pairs: List[ManualPair] = []
    for item in (data or {}).get("items") or []:
        if not isinstance(item, dict):
            continue
        label = str(item.get("label") or "").strip()
        value = coerce_number(item.get("value"))
        if not label or value is None:
            continue
        unit = str(item.get("unit") or "").strip()
        if unit and unit not in label:
            label = f"{label}{unit}"
        page = item.get("page")
        pairs.append(ManualPair(label=label, numeric_value=value, page=page if isinstance(page, int) else None))
    return pairs


def extract_manual_candidates(
    pages: Iterable[Dict[str, Any]],
    llm=None,
    min_pairs: int = 3,
) -> List[ManualPair]:
    """Heuristic pass first; ask the LLM only when it finds fewer than ``min_pairs``."""
    pages = list(pages or [])
    pairs = parse_manual_pairs(pages)
    if llm is None or len(pairs) >= min_pairs:
        return pairs
    seen = {normalize_label(pair.label) for pair in pairs}
    for pair in extract_manual_pairs_with_llm(pages, llm):
        marker = normalize_label(pair.label)
        if marker in seen:
            continue
        seen.add(marker)
        pairs.append(pair)
    return pairs
