import re
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, NamedTuple, Optional, Sequence, Tuple


FACT_KEYS: Tuple[str, ...] = (
    "budget_revenue_total",
    "budget_revenue_fiscal",
    "budget_revenue_business",
    "budget_revenue_operation",
    "budget_revenue_other",
    "budget_expenditure_total",
    "budget_expenditure_basic",
    "budget_expenditure_project",
    "fiscal_grant_revenue_total",
    "fiscal_grant_expenditure_total",
    "fiscal_grant_expenditure_general",
    "fiscal_grant_expenditure_gov_fund",
    "fiscal_grant_expenditure_capital",
    "three_public_total",
    "three_public_outbound",
    "three_public_vehicle_total",
    "three_public_vehicle_purchase",
    "three_public_vehicle_operation",
    "three_public_reception",
    "operation_fund",
)

FACT_LABELS = MappingProxyType({
    "budget_revenue_total": "收入总计",
    "budget_revenue_fiscal": "财政拨款收入",
    "budget_revenue_business": "事业收入",
    "budget_revenue_operation": "事业单位经营收入",
    "budget_revenue_other": "其他收入",
    "budget_expenditure_total": "支出总计",
    "budget_expenditure_basic": "基本支出",
    "budget_expenditure_project": "项目支出",
    "fiscal_grant_revenue_total": "财政拨款收入合计",
    "fiscal_grant_expenditure_total": "财政拨款支出合计",
    "fiscal_grant_expenditure_general": "一般公共预算财政拨款支出",
    "fiscal_grant_expenditure_gov_fund": "政府性基金预算财政拨款支出",
    "fiscal_grant_expenditure_capital": "国有资本经营预算财政拨款支出",
    "three_public_total": "三公经费合计",
    "three_public_outbound": "因公出国（境）费",
    "three_public_vehicle_total": "公务用车购置及运行费",
    "three_public_vehicle_purchase": "公务用车购置费",
    "three_public_vehicle_operation": "公务用车运行费",
    "three_public_reception": "公务接待费",
    "operation_fund": "机关运行经费",
})

_QUOTES = re.compile(r"[“”\"'`]")
_BRACKETED = re.compile(r"[（(].*?[)）]", re.DOTALL)
_PUNCTUATION = re.compile(r"[,:;，。；：、]")
_WHITESPACE = re.compile(r"\s+")
_UNIT_WORDS = re.compile(r"万元|万|元")


def normalize_label(raw: object) -> str:
    """Reduce a raw label to the string used for alias and rule matching.

    >>> normalize_label(" 因公出国（境）费（万元） ")
    '因公出国费'
    """
    text = str(raw if raw is not None else "").lower().strip()
    text = _QUOTES.sub("", text)
    text = _BRACKETED.sub("", text)
    text = _PUNCTUATION.sub("", text)
    text = _WHITESPACE.sub("", text)
    return _UNIT_WORDS.sub("", text)


class FuzzyRule(NamedTuple):
    key: str
    predicate: Callable[[str], bool]


def contains(
    all_of: Sequence[str] = (),
    any_of: Sequence[str] = (),
    none_of: Sequence[str] = (),
) -> Callable[[str], bool]:
    all_of, any_of, none_of = tuple(all_of), tuple(any_of), tuple(none_of)

    def predicate(text: str) -> bool:
        if not all(token in text for token in all_of):
            return False
        if any_of and not any(token in text for token in any_of):
            return False
        return not any(token in text for token in none_of)

    return predicate


DEFAULT_ALIASES: Mapping[str, str] = MappingProxyType({
    "收入合计": "budget_revenue_total",
    "收入总计": "budget_revenue_total",
    "本年收入": "budget_revenue_total",
    "预算收入合计": "budget_revenue_total",
    "财政拨款收入": "budget_revenue_fiscal",
    "事业收入": "budget_revenue_business",
    "事业单位经营收入": "budget_revenue_operation",
    "经营收入": "budget_revenue_operation",
    "其他收入": "budget_revenue_other",
    "支出合计": "budget_expenditure_total",
    "支出总计": "budget_expenditure_total",
    "本年支出": "budget_expenditure_total",
    "预算支出合计": "budget_expenditure_total",
    "基本支出": "budget_expenditure_basic",
    "项目支出": "budget_expenditure_project",
    "财政拨款收入合计": "fiscal_grant_revenue_total",
    "财政拨款支出合计": "fiscal_grant_expenditure_total",
    "一般公共预算财政拨款支出": "fiscal_grant_expenditure_general",
    "政府性基金预算财政拨款支出": "fiscal_grant_expenditure_gov_fund",
    "国有资本经营预算财政拨款支出": "fiscal_grant_expenditure_capital",
    "三公经费合计": "three_public_total",
    "三公经费": "three_public_total",
    "因公出国费": "three_public_outbound",
    "因公出国境费": "three_public_outbound",
    "公务用车购置及运行费": "three_public_vehicle_total",
    "公务用车购置和运行费": "three_public_vehicle_total",
    "公务用车购置费": "three_public_vehicle_purchase",
    "公务用车运行费": "three_public_vehicle_operation",
    "公务接待费": "three_public_reception",
    "机关运行经费预算数": "operation_fund",
    "机关运行经费": "operation_fund",
    "totalincome": "budget_revenue_total",
    "fiscalappropriationincome": "budget_revenue_fiscal",
    "businessincome": "budget_revenue_business",
    "operationincome": "budget_revenue_operation",
    "otherincome": "budget_revenue_other",
    "totalexpenditure": "budget_expenditure_total",
    "basicexpenditure": "budget_expenditure_basic",
    "projectexpenditure": "budget_expenditure_project",
    "threepublictotal": "three_public_total",
    "outboundexpense": "three_public_outbound",
    "vehiclepurchaseoperation": "three_public_vehicle_total",
    "vehiclepurchase": "three_public_vehicle_purchase",
    "vehicleoperation": "three_public_vehicle_operation",
    "receptionexpense": "three_public_reception",
    "operationfund": "operation_fund",
})

# First match wins. Specific three-public and fiscal-grant rules must stay
# ahead of the generic revenue/expenditure totals.
DEFAULT_FUZZY_RULES: Tuple[FuzzyRule, ...] = (
    FuzzyRule("three_public_total", contains(["三公", "合计"])),
    FuzzyRule("three_public_outbound", contains(["因公出国"])),
    FuzzyRule("three_public_vehicle_total", contains(["公务用车"], any_of=["购置及运行", "购置和运行"])),
    FuzzyRule("three_public_vehicle_purchase", contains(["公务用车", "购置费"], none_of=["运行"])),
    FuzzyRule("three_public_vehicle_operation", contains(["公务用车", "运行费"])),
    FuzzyRule("three_public_reception", contains(["公务接待"])),
    FuzzyRule("operation_fund", contains(["机关运行经费"])),
    FuzzyRule("fiscal_grant_expenditure_capital", contains(["国有资本经营预算", "财政拨款", "支出"])),
    FuzzyRule("fiscal_grant_expenditure_gov_fund", contains(["政府性基金预算", "财政拨款", "支出"])),
    FuzzyRule("fiscal_grant_expenditure_general", contains(["一般公共预算", "财政拨款", "支出"])),
    FuzzyRule("fiscal_grant_expenditure_total", contains(["财政拨款", "支出", "合计"])),
    FuzzyRule("fiscal_grant_revenue_total", contains(["财政拨款", "收入", "合计"])),
    FuzzyRule("budget_expenditure_project", contains(["项目支出"])),
    FuzzyRule("budget_expenditure_basic", contains(["基本支出"])),
    FuzzyRule("budget_expenditure_total", contains(["支出"], any_of=["总计", "合计", "本年支出"])),
    FuzzyRule("budget_revenue_fiscal", contains(["财政拨款收入"])),
    FuzzyRule("budget_revenue_business", contains(["事业收入"])),
    FuzzyRule("budget_revenue_operation", contains(["经营收入"])),
    FuzzyRule("budget_revenue_other", contains(["其他收入"])),
    FuzzyRule("budget_revenue_total", contains(["收入"], any_of=["总计", "合计", "本年收入"])),
)


class KeyResolver:
    """Map raw labels onto the canonical fact keys.

    Exact aliases are consulted first; otherwise the fuzzy rules are tried in
    order and the first match wins. ``None`` means the label is unmapped.
    """

    def __init__(
        self,
        aliases: Optional[Mapping[str, str]] = None,
        fuzzy_rules: Optional[Iterable[FuzzyRule]] = None,
    ) -> None:
        source = DEFAULT_ALIASES if aliases is None else aliases
        self.aliases: Mapping[str, str] = MappingProxyType(
            {normalize_label(label): key for label, key in source.items()}
        )
        self.fuzzy_rules: Tuple[FuzzyRule, ...] = tuple(
            DEFAULT_FUZZY_RULES if fuzzy_rules is None else fuzzy_rules
        )

    def resolve(self, raw_label: object) -> Optional[str]:
        normalized = normalize_label(raw_label)
        if not normalized:
            return None
        hit = self.aliases.get(normalized)
        if hit is not None:
            return hit
        for rule in self.fuzzy_rules:
            if rule.predicate(normalized):
                return rule.key
        return None


_DEFAULT_RESOLVER = KeyResolver()


def resolve_key(raw_label: object) -> Optional[str]:
    return _DEFAULT_RESOLVER.resolve(raw_label)
