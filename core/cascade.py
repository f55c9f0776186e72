"""
Deterministic categorization cascade.

Each transaction goes through a fixed sequence of matchers; the first one
that produces an acceptable result wins and the remaining stages are skipped.
Anything left over is returned as unresolved for the external classifier.
"""
import re
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, model_validator

from core.logger import setup_logger
from core.schema import (
    AmountCondition,
    BalanceImpact,
    Category,
    CategoryType,
    MatchSource,
    RuleMatchResult,
    Transaction,
    UserRule,
)

logger = setup_logger(__name__)

KEYWORD_CONFIDENCE = 0.95
USER_RULE_CONFIDENCE = 1.0

PARTNER_IN_CODE = "ORTAK_IN"
PARTNER_OUT_CODE = "ORTAK_OUT"

NON_PNL_TYPES = frozenset({"PARTNER", "EXCLUDED", "INVESTMENT", "FINANCING"})
NON_PNL_CODES = frozenset({"KREDI_IN", "KREDI_OUT", "IC_TRANSFER", "NAKIT_CEKME"})


class ContextRule(BaseModel):
    """Structural heuristic mapping a counterparty or description shape to a category."""
    name: str
    counterparty_patterns: List[str] = Field(default_factory=list)
    description_patterns: List[str] = Field(default_factory=list)
    description_prefix: Optional[str] = None
    amount_condition: AmountCondition = "any"
    min_abs_amount: Optional[Decimal] = None
    max_abs_amount: Optional[Decimal] = None
    category_code: str
    confidence: float = Field(default=0.95, ge=0.9, le=1.0)

    @model_validator(mode="after")
    def require_condition(self):
        if not (self.counterparty_patterns or self.description_patterns or self.description_prefix):
            raise ValueError(f"context rule '{self.name}' has no text condition")
        return self


class LabelEntry(BaseModel):
    """Static label table row; direction-split entries carry inbound and outbound codes."""
    label: str = Field(..., min_length=1)
    category_code: Optional[str] = None
    inbound_code: Optional[str] = None
    outbound_code: Optional[str] = None
    confidence: float = Field(default=0.9, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def require_target(self):
        if not (self.category_code or self.inbound_code or self.outbound_code):
            raise ValueError(f"label '{self.label}' maps to no category")
        return self

    def code_for(self, amount: Decimal) -> Optional[str]:
        if self.category_code:
            return self.category_code
        if amount > 0:
            return self.inbound_code
        if amount < 0:
            return self.outbound_code
        return None


class AmountBucket(BaseModel):
    """Half-open range [min_amount, max_amount) of absolute amounts."""
    min_amount: Decimal = Decimal("0")
    max_amount: Optional[Decimal] = None
    category_code: str
    confidence: float = Field(..., ge=0.0, le=1.0)

    def contains(self, value: Decimal) -> bool:
        if value < self.min_amount:
            return False
        return self.max_amount is None or value < self.max_amount


class AmountBucketRule(BaseModel):
    """Buckets applied to one known counterparty class."""
    name: str
    counterparty_patterns: List[str] = Field(..., min_length=1)
    amount_condition: AmountCondition = "any"
    buckets: List[AmountBucket] = Field(default_factory=list)


class CascadeConfig(BaseModel):
    """Business data driving the heuristic stages."""
    context_rules: List[ContextRule] = Field(default_factory=list)
    labels: List[LabelEntry] = Field(default_factory=list)
    negative_patterns: Dict[str, List[str]] = Field(default_factory=dict)
    amount_rules: List[AmountBucketRule] = Field(default_factory=list)


def _upper(text: Optional[str]) -> str:
    return (text or "").strip().upper()


def matches_amount_condition(amount: Decimal, condition: str) -> bool:
    if condition == "positive":
        return amount > 0
    if condition == "negative":
        return amount < 0
    return True


def matches_pattern(text: str, pattern: str, rule_type: str) -> bool:
    """Case-insensitive pattern test; an invalid regex never matches."""
    if rule_type == "regex":
        try:
            return re.search(pattern, text, re.IGNORECASE) is not None
        except re.error:
            logger.warning(f"Invalid rule regex '{pattern}', ignoring")
            return False

    value, pat = _upper(text), _upper(pattern)
    if rule_type == "startsWith":
        return value.startswith(pat)
    if rule_type == "exact":
        return value == pat
    return pat in value


def is_amount_direction_valid(category: Category, amount: Decimal) -> bool:
    """
    Check that a category's direction agrees with the amount sign.

    Income types and ``_IN`` codes need a positive amount, expense types
    and ``_OUT`` codes a negative one. Other categories accept any sign.
    """
    code = category.code.upper()
    if category.type == "INCOME" or code.endswith("_IN"):
        return amount > 0
    if category.type == "EXPENSE" or code.endswith("_OUT"):
        return amount < 0
    return True


def affects_pnl_for(category_type: CategoryType, category_code: str) -> bool:
    if category_type in NON_PNL_TYPES:
        return False
    return category_code not in NON_PNL_CODES


def balance_impact_for(category_type: CategoryType, amount: Decimal) -> BalanceImpact:
    if category_type == "INCOME":
        return "equity_increase"
    if category_type == "EXPENSE":
        return "equity_decrease"
    if category_type == "PARTNER":
        return "liability_decrease" if amount > 0 else "liability_increase"
    if category_type == "FINANCING":
        return "liability_increase" if amount > 0 else "liability_decrease"
    if category_type == "INVESTMENT":
        return "asset_increase"
    return "none"


class CascadeContext:
    """Lookup tables shared by all matchers during one classify call."""

    def __init__(
        self,
        categories: Sequence[Category],
        user_rules: Sequence[UserRule] = (),
        config: Optional[CascadeConfig] = None,
    ):
        active = [c for c in categories if c.is_active]
        self.categories = sorted(active, key=lambda c: (c.code, c.id))
        self.by_code: Dict[str, Category] = {}
        for category in self.categories:
            self.by_code.setdefault(category.code, category)
        self.by_id = {c.id: c for c in self.categories}
        self.user_rules = sorted(
            (r for r in user_rules if r.is_active),
            key=lambda r: (r.priority, r.id),
        )
        self.config = config or CascadeConfig()
        self.labels = sorted(self.config.labels, key=lambda e: (-len(e.label), _upper(e.label)))

    def result(
        self,
        transaction: Transaction,
        category: Category,
        confidence: float,
        source: MatchSource,
        reasoning: str,
        counterparty: Optional[str] = None,
    ) -> RuleMatchResult:
        return RuleMatchResult(
            transaction_index=transaction.index,
            category_id=category.id,
            category_code=category.code,
            category_type=category.type,
            confidence=confidence,
            source=source,
            reasoning=reasoning,
            affects_pnl=affects_pnl_for(category.type, category.code),
            balance_impact=balance_impact_for(category.type, transaction.amount),
            counterparty=counterparty or transaction.counterparty,
        )


Matcher = Callable[[Transaction, CascadeContext], Optional[RuleMatchResult]]


def match_user_rules(transaction: Transaction, context: CascadeContext) -> Optional[RuleMatchResult]:
    """Operator rules, lowest priority value first."""
    for rule in context.user_rules:
        if not matches_amount_condition(transaction.amount, rule.amount_condition):
            continue
        if not matches_pattern(transaction.description, rule.pattern, rule.rule_type):
            continue

        if rule.is_partner_rule:
            code = PARTNER_OUT_CODE if transaction.amount < 0 else PARTNER_IN_CODE
            category = context.by_code.get(code)
            if category is None:
                logger.warning(f"Partner rule {rule.id} matched but category {code} is not available")
                continue
            return context.result(
                transaction, category, USER_RULE_CONFIDENCE, "user_rule",
                f'Partner rule: "{rule.pattern}"', counterparty=rule.pattern,
            )

        category = context.by_id.get(rule.category_id) if rule.category_id else None
        if category is None:
            logger.warning(f"User rule {rule.id} points to unknown category {rule.category_id}, skipping")
            continue
        return context.result(
            transaction, category, USER_RULE_CONFIDENCE, "user_rule", f'Rule: "{rule.pattern}"',
        )
    return None


def match_context_rules(transaction: Transaction, context: CascadeContext) -> Optional[RuleMatchResult]:
    description = _upper(transaction.description)
    counterparty = _upper(transaction.counterparty)
    magnitude = abs(transaction.amount)

    for rule in context.config.context_rules:
        if not matches_amount_condition(transaction.amount, rule.amount_condition):
            continue
        if rule.min_abs_amount is not None and magnitude < rule.min_abs_amount:
            continue
        if rule.max_abs_amount is not None and magnitude > rule.max_abs_amount:
            continue
        if rule.description_prefix and not description.startswith(_upper(rule.description_prefix)):
            continue
        if rule.counterparty_patterns and not any(
            _upper(p) in counterparty or _upper(p) in description for p in rule.counterparty_patterns
        ):
            continue
        if rule.description_patterns and not any(_upper(p) in description for p in rule.description_patterns):
            continue

        category = context.by_code.get(rule.category_code)
        if category is None:
            logger.warning(f"Context rule '{rule.name}' targets unknown category {rule.category_code}")
            continue
        return context.result(
            transaction, category, rule.confidence, "context_rule", f"Context rule: {rule.name}",
        )
    return None


def match_label(transaction: Transaction, context: CascadeContext) -> Optional[RuleMatchResult]:
    """Exact label first, then the longest table entry contained in the label."""
    label = _upper(transaction.label)
    if not label:
        return None

    exact = [e for e in context.labels if _upper(e.label) == label]
    partial = [e for e in context.labels if _upper(e.label) != label and _upper(e.label) in label]

    for entry, how in [(e, "exact") for e in exact] + [(e, "partial") for e in partial]:
        code = entry.code_for(transaction.amount)
        category = context.by_code.get(code) if code else None
        if category is None:
            continue
        return context.result(
            transaction, category, entry.confidence, "excel_label",
            f'Label ({how}): "{entry.label}"',
        )
    return None


def match_keywords(transaction: Transaction, context: CascadeContext) -> Optional[RuleMatchResult]:
    """Longest matching keyword across all categories wins."""
    description = _upper(transaction.description)
    if not description:
        return None

    candidates: List[Tuple[Category, str]] = []
    for category in context.categories:
        matching = [kw for kw in category.keywords if kw.strip() and _upper(kw) in description]
        if not matching:
            continue
        if not is_amount_direction_valid(category, transaction.amount):
            continue
        negatives = context.config.negative_patterns.get(category.code, [])
        if any(_upper(p) in description for p in negatives):
            logger.debug(f"Transaction {transaction.index}: {category.code} excluded by negative pattern")
            continue
        keyword = max(matching, key=lambda kw: (len(kw.strip()), _upper(kw)))
        candidates.append((category, keyword))

    if not candidates:
        return None

    category, keyword = min(
        candidates,
        key=lambda c: (-len(c[1].strip()), -c[0].match_priority, c[0].code, c[0].id),
    )
    return context.result(
        transaction, category, KEYWORD_CONFIDENCE, "keyword", f'Keyword: "{keyword}"',
    )


def match_amount_buckets(transaction: Transaction, context: CascadeContext) -> Optional[RuleMatchResult]:
    description = _upper(transaction.description)
    counterparty = _upper(transaction.counterparty)
    magnitude = abs(transaction.amount)

    for rule in context.config.amount_rules:
        if not matches_amount_condition(transaction.amount, rule.amount_condition):
            continue
        if not any(_upper(p) in counterparty or _upper(p) in description for p in rule.counterparty_patterns):
            continue
        for bucket in rule.buckets:
            if not bucket.contains(magnitude):
                continue
            category = context.by_code.get(bucket.category_code)
            if category is None:
                continue
            return context.result(
                transaction, category, bucket.confidence, "amount_rule",
                f"Amount rule: {rule.name} ({bucket.min_amount}-{bucket.max_amount or 'inf'})",
            )
    return None


DEFAULT_STAGES: Tuple[Matcher, ...] = (
    match_user_rules,
    match_context_rules,
    match_label,
    match_keywords,
    match_amount_buckets,
)


def classify(
    transactions: Sequence[Transaction],
    categories: Sequence[Category],
    user_rules: Sequence[UserRule] = (),
    config: Optional[CascadeConfig] = None,
    stages: Sequence[Matcher] = DEFAULT_STAGES,
) -> Tuple[List[RuleMatchResult], List[Transaction]]:
    """
    Run the cascade over a list of transactions.

    Args:
        transactions: Transactions to categorize
        categories: Available categories; inactive ones are ignored
        user_rules: Operator rules
        config: Context rules, label table, negative patterns and amount buckets
        stages: Matchers in precedence order

    Returns:
        Tuple of (matched results sorted by transaction index, unresolved
        transactions in input order)
    """
    context = CascadeContext(categories, user_rules, config)
    matched: List[RuleMatchResult] = []
    unresolved: List[Transaction] = []
    seen = set()

    for transaction in transactions:
        if transaction.index in seen:
            logger.warning(f"Duplicate transaction index {transaction.index}, ignoring repeat")
            continue
        seen.add(transaction.index)

        result = None
        for stage in stages:
            candidate = stage(transaction, context)
            if candidate is None:
                continue
            category = context.by_id[candidate.category_id]
            if not is_amount_direction_valid(category, transaction.amount):
                logger.debug(
                    f"Transaction {transaction.index}: {stage.__name__} proposed "
                    f"{candidate.category_code} against amount sign, skipping stage"
                )
                continue
            result = candidate
            break

        if result is None:
            unresolved.append(transaction)
        else:
            matched.append(result)

    matched.sort(key=lambda r: r.transaction_index)
    logger.info(f"Cascade matched {len(matched)}/{len(seen)} transactions, {len(unresolved)} unresolved")
    return matched, unresolved
