"""
Pydantic schemas for the import pipeline.
Defines batches, transactions, categories, rule matches and run reports.
"""
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

CategoryType = Literal["INCOME", "EXPENSE", "PARTNER", "FINANCING", "INVESTMENT", "EXCLUDED"]
MatchSource = Literal["user_rule", "context_rule", "excel_label", "keyword", "amount_rule", "ai"]
BalanceImpact = Literal[
    "equity_increase",
    "equity_decrease",
    "asset_increase",
    "liability_increase",
    "liability_decrease",
    "none",
]
AmountCondition = Literal["positive", "negative", "any"]
RuleType = Literal["contains", "startsWith", "exact", "regex"]

# Results below this confidence are flagged for manual review
REVIEW_CONFIDENCE_THRESHOLD = 0.7


class RawBatch(BaseModel):
    """Header line plus up to N data lines of the raw statement."""
    model_config = ConfigDict(frozen=True)

    batch_index: int = Field(..., ge=0)
    content: str

    @property
    def row_count(self) -> int:
        """Number of data lines (header excluded)."""
        return max(len(self.content.split("\n")) - 1, 0)


class RowRange(BaseModel):
    """Inclusive 1-based row numbers of the original content (header is row 1)."""
    start: int
    end: int


class Transaction(BaseModel):
    """A structured transaction as returned by extraction, keyed by global index."""
    index: int = Field(..., ge=0, description="Global index, batch_index * N + local offset")
    row_number: int
    date: Optional[str] = None
    original_date: Optional[str] = None
    description: str = ""
    amount: Decimal
    original_amount: Optional[str] = None
    counterparty: Optional[str] = None
    reference: Optional[str] = None
    balance: Optional[Decimal] = None
    label: Optional[str] = Field(None, description="Free-text label supplied with the row, if any")
    transaction_type: Optional[str] = None
    needs_review: bool = False


class Category(BaseModel):
    """Financial category the cascade and classifier can assign."""
    id: str
    code: str
    name: str = ""
    type: CategoryType
    keywords: List[str] = Field(default_factory=list)
    match_priority: int = 0
    is_active: bool = True


class UserRule(BaseModel):
    """Operator-authored pattern rule, evaluated before anything else."""
    id: str
    pattern: str = Field(..., min_length=1)
    rule_type: RuleType = "contains"
    amount_condition: AmountCondition = "any"
    category_id: Optional[str] = None
    is_partner_rule: bool = False
    priority: int = 0
    is_active: bool = True


class RuleMatchResult(BaseModel):
    """Category assignment for one transaction."""
    transaction_index: int
    category_id: Optional[str] = None
    category_code: str
    category_type: CategoryType
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: MatchSource
    reasoning: str = ""
    affects_pnl: bool
    balance_impact: BalanceImpact
    counterparty: Optional[str] = None

    @property
    def needs_review(self) -> bool:
        return self.confidence < REVIEW_CONFIDENCE_THRESHOLD


class FailedBatch(BaseModel):
    """A batch whose retries were exhausted."""
    batch_index: int
    row_range: RowRange
    error: str
    retry_count: int = 0


class BatchProgress(BaseModel):
    """Read-only progress snapshot; replaced as a whole once per batch group."""
    model_config = ConfigDict(frozen=True)

    completed: int = 0
    total: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    retried_batches: int = 0
    processed_transactions: int = 0
    expected_transactions: int = 0
    estimated_time_left: Optional[float] = Field(None, description="Seconds, None until measurable")
    current_retry_attempt: int = 0


class ResumeState(BaseModel):
    """Replayable snapshot of an interrupted extraction run."""
    batches: List[RawBatch]
    next_index: int = Field(..., ge=0)
    collected_transactions: List[Transaction] = Field(default_factory=list)
    failed_batches: List[FailedBatch] = Field(default_factory=list)
    retried_batches: int = Field(default=0, ge=0)


class ExtractionMetadata(BaseModel):
    """Per-batch metadata sent to the extraction service."""
    batch_index: int
    total_batches: int
    file_name: str = ""
    file_type: str = ""
    first_row_number: int = 2


class ExtractionRequest(BaseModel):
    content: str
    metadata: ExtractionMetadata


class ExtractionResponse(BaseModel):
    """Extraction service reply; transactions are raw field mappings."""
    success: bool
    transactions: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ClassifierRequest(BaseModel):
    transactions: List[Transaction]
    categories: List[Category]


class ClassifierBatch(BaseModel):
    """A fixed-size slice of unresolved transactions sent to the classifier together."""
    batch_index: int = Field(..., ge=0)
    transactions: List[Transaction]


class ClassifierResult(BaseModel):
    """One classifier decision; accepts the camelCase keys the gateway returns."""
    index: int
    category_code: str = Field(..., validation_alias=AliasChoices("category_code", "categoryCode"))
    confidence: float = Field(default=0.5)
    reasoning: str = ""
    affects_pnl: Optional[bool] = Field(None, validation_alias=AliasChoices("affects_pnl", "affectsPnl"))
    balance_impact: Optional[str] = Field(None, validation_alias=AliasChoices("balance_impact", "balanceImpact"))
    counterparty: Optional[str] = None

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v):
        """Keep confidence within [0, 1]."""
        return max(0.0, min(1.0, float(v)))


class ClassifierResponse(BaseModel):
    results: List[ClassifierResult] = Field(default_factory=list)


class UnmatchedTransaction(BaseModel):
    """A transaction that neither the cascade nor the classifier resolved."""
    transaction_index: int
    row_number: int
    reason: str


class ImportReport(BaseModel):
    """Aggregate outcome of one import run."""
    file_name: str = ""
    status: Literal["completed"] = "completed"
    total_batches: int = 0
    successful_batches: int = 0
    retried_batches: int = 0
    failed_batches: List[FailedBatch] = Field(default_factory=list)
    total_transactions: int = 0
    results: List[RuleMatchResult] = Field(default_factory=list)
    source_counts: Dict[str, int] = Field(default_factory=dict)
    categorized_by_cascade: int = 0
    categorized_by_classifier: int = 0
    uncategorized: List[UnmatchedTransaction] = Field(default_factory=list)
    low_confidence_count: int = 0

    @property
    def categorized_count(self) -> int:
        return self.categorized_by_cascade + self.categorized_by_classifier

    @property
    def is_fully_accounted(self) -> bool:
        """Every transaction appears exactly once across matched and uncategorized."""
        indices = [r.transaction_index for r in self.results]
        indices.extend(u.transaction_index for u in self.uncategorized)
        return len(indices) == len(set(indices)) == self.total_transactions
