"""
External classifier fallback for transactions the cascade left unresolved.

Unresolved transactions are cut into fixed-size batches and pushed through the
same ParallelBatchExecutor used for extraction, so the group-of-K discipline,
retry behaviour and failure reporting are shared.
"""
import asyncio
from dataclasses import dataclass, field
from operator import attrgetter
from typing import Dict, List, Optional, Protocol, Sequence

from core.cascade import affects_pnl_for, balance_impact_for, is_amount_direction_valid
from core.exceptions import ClassifierError
from core.logger import setup_logger
from core.retry import RetryPolicy
from core.schema import (
    Category,
    ClassifierBatch,
    ClassifierRequest,
    ClassifierResponse,
    FailedBatch,
    RowRange,
    RuleMatchResult,
    Transaction,
    UnmatchedTransaction,
)
from services.executor import BatchOutcome, ParallelBatchExecutor, ProgressTracker

logger = setup_logger(__name__)

by_transaction_index = attrgetter("transaction_index")


class ClassifierService(Protocol):
    def classify(self, request: ClassifierRequest) -> ClassifierResponse: ...


@dataclass
class ClassificationOutcome:
    """What the classifier stage resolved and what it could not."""
    matched: List[RuleMatchResult] = field(default_factory=list)
    unmatched: List[UnmatchedTransaction] = field(default_factory=list)
    failed_batches: List[FailedBatch] = field(default_factory=list)


class ClassifierWorker:
    """Runs one classifier batch with retry and validates every returned decision."""

    def __init__(
        self,
        classifier_service: ClassifierService,
        categories: Sequence[Category],
        retry_policy: RetryPolicy,
    ):
        self.classifier_service = classifier_service
        self.categories = [c for c in categories if c.is_active]
        self.by_code: Dict[str, Category] = {}
        for category in sorted(self.categories, key=lambda c: (c.code, c.id)):
            self.by_code.setdefault(category.code, category)
        self.retry_policy = retry_policy
        # Rejection reasons per transaction index, written between awaits only
        self.rejections: Dict[int, str] = {}

    def row_range(self, batch: ClassifierBatch) -> RowRange:
        rows = [t.row_number for t in batch.transactions] or [0]
        return RowRange(start=min(rows), end=max(rows))

    async def process(self, batch: ClassifierBatch, total_batches: int) -> BatchOutcome:
        label = f"Classifier batch {batch.batch_index + 1}/{total_batches}"
        request = ClassifierRequest(transactions=batch.transactions, categories=self.categories)

        attempts = 0
        try:
            async for attempt in self.retry_policy.retrying(label):
                with attempt:
                    attempts += 1
                    loop = asyncio.get_running_loop()
                    response = await loop.run_in_executor(
                        None, self.classifier_service.classify, request
                    )
                    if batch.transactions and not response.results:
                        raise ClassifierError(
                            "Classifier returned no results",
                            {"batch_index": batch.batch_index},
                        )
        except Exception as e:
            logger.error(f"{label} failed after {attempts} attempt(s): {e}")
            return BatchOutcome(
                batch_index=batch.batch_index,
                success=False,
                retry_count=attempts - 1,
                was_retried=attempts > 1,
                error=str(e),
                row_range=self.row_range(batch),
            )

        return BatchOutcome(
            batch_index=batch.batch_index,
            items=self._accept(batch, response),
            success=True,
            retry_count=attempts - 1,
            was_retried=attempts > 1,
        )

    def _accept(self, batch: ClassifierBatch, response: ClassifierResponse) -> List[RuleMatchResult]:
        """Turn classifier decisions into match results, rejecting invalid ones."""
        by_index = {t.index: t for t in batch.transactions}
        accepted: Dict[int, RuleMatchResult] = {}

        for decision in response.results:
            transaction = by_index.get(decision.index)
            if transaction is None:
                logger.warning(f"Classifier returned unknown index {decision.index}, ignoring")
                continue
            if decision.index in accepted:
                logger.warning(f"Classifier returned index {decision.index} twice, keeping the first")
                continue

            category = self.by_code.get(decision.category_code)
            if category is None:
                self.rejections[decision.index] = f"Unknown category code {decision.category_code}"
                continue
            if not is_amount_direction_valid(category, transaction.amount):
                self.rejections[decision.index] = (
                    f"Category {category.code} conflicts with amount sign ({transaction.amount})"
                )
                continue

            affects_pnl = affects_pnl_for(category.type, category.code)
            balance_impact = balance_impact_for(category.type, transaction.amount)
            if (decision.affects_pnl is not None and decision.affects_pnl != affects_pnl) or (
                decision.balance_impact is not None and decision.balance_impact != balance_impact
            ):
                logger.warning(
                    f"Classifier impact for index {decision.index} ({decision.affects_pnl}, "
                    f"{decision.balance_impact}) differs from {category.code} rules "
                    f"({affects_pnl}, {balance_impact}), using the rules"
                )

            accepted[decision.index] = RuleMatchResult(
                transaction_index=transaction.index,
                category_id=category.id,
                category_code=category.code,
                category_type=category.type,
                confidence=decision.confidence,
                source="ai",
                reasoning=decision.reasoning,
                affects_pnl=affects_pnl,
                balance_impact=balance_impact,
                counterparty=decision.counterparty or transaction.counterparty,
            )

        return list(accepted.values())


class ClassifierBatchRunner:
    """Sends unresolved transactions to the classifier in bounded-parallel batches."""

    def __init__(
        self,
        classifier_service: ClassifierService,
        batch_size: int = 25,
        concurrency: int = 3,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be a positive integer")
        self.classifier_service = classifier_service
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.retry_policy = retry_policy or RetryPolicy()

    def split(self, transactions: Sequence[Transaction]) -> List[ClassifierBatch]:
        return [
            ClassifierBatch(batch_index=i, transactions=list(transactions[start:start + self.batch_size]))
            for i, start in enumerate(range(0, len(transactions), self.batch_size))
        ]

    async def classify(
        self,
        unresolved: Sequence[Transaction],
        categories: Sequence[Category],
        progress: Optional[ProgressTracker] = None,
    ) -> ClassificationOutcome:
        """
        Classify unresolved transactions.

        Args:
            unresolved: Transactions the cascade could not resolve
            categories: Categories the classifier may choose from
            progress: Optional tracker for classifier progress

        Returns:
            ClassificationOutcome in which every input transaction appears
            exactly once, either as a match or as unmatched with a reason
        """
        if not unresolved:
            return ClassificationOutcome()

        batches = self.split(unresolved)
        worker = ClassifierWorker(self.classifier_service, categories, self.retry_policy)
        executor = ParallelBatchExecutor(
            worker,
            concurrency=self.concurrency,
            progress=progress,
            sort_key=by_transaction_index,
            label="classifier batch",
        )
        logger.info(f"Classifying {len(unresolved)} transactions in {len(batches)} batches")
        result = await executor.run(batches, expected_items=len(unresolved))

        failed_reason = {
            t.index: f"Classifier batch {failed.batch_index + 1} failed: {failed.error}"
            for failed in result.failed_batches
            for t in batches[failed.batch_index].transactions
        }
        resolved = {r.transaction_index for r in result.items}

        unmatched = [
            UnmatchedTransaction(
                transaction_index=t.index,
                row_number=t.row_number,
                reason=failed_reason.get(t.index)
                or worker.rejections.get(t.index)
                or "No classifier result",
            )
            for t in sorted(unresolved, key=attrgetter("index"))
            if t.index not in resolved
        ]

        logger.info(f"Classifier resolved {len(result.items)}/{len(unresolved)}, {len(unmatched)} unmatched")
        return ClassificationOutcome(
            matched=result.items,
            unmatched=unmatched,
            failed_batches=result.failed_batches,
        )
