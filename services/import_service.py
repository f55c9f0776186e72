"""
Bank statement import service.
Encapsulates the pipeline: split, extract in parallel, categorize, report.
"""
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from core.batching import count_data_rows, split_into_batches
from core.cascade import CascadeConfig, classify as run_cascade
from core.catalog import load_categories, load_user_rules
from core.config import Settings, get_settings
from core.db import Database
from core.exceptions import NoTransactionsError, ValidationError
from core.logger import setup_logger
from core.parsing import detect_file_type, read_statement_content
from core.retry import RetryPolicy
from core.schema import (
    BatchProgress,
    Category,
    ImportReport,
    RawBatch,
    ResumeState,
    RuleMatchResult,
    Transaction,
    UserRule,
)
from services.batch_worker import ExtractionService, RetryingBatchWorker
from services.classifier_runner import ClassificationOutcome, ClassifierBatchRunner, ClassifierService
from services.executor import CancellationToken, ExecutionResult, ParallelBatchExecutor, ProgressTracker

logger = setup_logger(__name__)


@dataclass
class CategorizationResult:
    cascade_matched: List[RuleMatchResult] = field(default_factory=list)
    classification: ClassificationOutcome = field(default_factory=ClassificationOutcome)


@dataclass
class ImportResult:
    """Transactions of a finished run and the report describing it."""
    transactions: List[Transaction]
    report: ImportReport


class BankImportService:
    """Service running bank statements through extraction and categorization."""

    def __init__(
        self,
        extraction_service: ExtractionService,
        classifier_service: ClassifierService,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cascade_config: Optional[CascadeConfig] = None,
        persistence: Optional[Database] = None,
        on_progress: Optional[Callable[[BatchProgress], None]] = None,
    ):
        """
        Initialize import service.

        Args:
            extraction_service: Blocking per-batch extraction callable holder
            classifier_service: Blocking per-batch classifier callable holder
            settings: Settings to use instead of the global ones
            retry_policy: Retry behaviour for both services
            cascade_config: Heuristic rule data; empty when omitted
            persistence: Store receiving upserts after each phase
            on_progress: Called with every extraction progress snapshot
        """
        self.settings = settings or get_settings()
        self.extraction_service = extraction_service
        self.classifier_service = classifier_service
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
        )
        self.cascade_config = cascade_config or CascadeConfig()
        self.persistence = persistence
        self.progress = ProgressTracker(on_progress=on_progress)

    def prepare_batches(self, content: str) -> List[RawBatch]:
        """
        Split statement content into extraction batches.

        Raises:
            NoTransactionsError: If the content has no data rows
        """
        batches = split_into_batches(content, self.settings.batch_size)
        if not batches:
            raise NoTransactionsError("Statement contains no data rows")
        logger.info(
            f"Prepared {len(batches)} batches of up to {self.settings.batch_size} rows "
            f"({count_data_rows(content)} data rows)"
        )
        return batches

    def _executor(
        self,
        file_name: str,
        file_type: str,
        cancel_token: Optional[CancellationToken],
    ) -> ParallelBatchExecutor:
        worker = RetryingBatchWorker(
            self.extraction_service,
            self.retry_policy,
            batch_size=self.settings.batch_size,
            file_name=file_name,
            file_type=file_type,
        )
        return ParallelBatchExecutor(
            worker,
            concurrency=self.settings.max_concurrent_batches,
            cancel_token=cancel_token,
            progress=self.progress,
        )

    async def extract(
        self,
        content: str,
        file_name: str = "",
        file_type: str = "",
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """
        Extract all transactions of a statement.

        Args:
            content: Statement content, header first
            file_name: Original file name, passed to the extraction service
            file_type: File type label, passed to the extraction service
            cancel_token: Token that pauses the run at the next group boundary

        Returns:
            ExecutionResult with globally ordered transactions and failed batches

        Raises:
            NoTransactionsError: If nothing could be extracted
            ImportPaused: If the run was paused
        """
        batches = self.prepare_batches(content)
        executor = self._executor(file_name, file_type, cancel_token)
        result = await executor.run(batches, expected_items=count_data_rows(content))
        return self._check_extraction(result)

    async def resume_extraction(
        self,
        state: ResumeState,
        file_name: str = "",
        file_type: str = "",
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """
        Continue a paused extraction from its snapshot.

        Only batches from ``state.next_index`` on are sent again; the result is
        the same as that of an uninterrupted run.

        Raises:
            ValidationError: If the state does not describe a paused run
        """
        if not state.batches or state.next_index > len(state.batches):
            raise ValidationError(
                "Resume state does not match its batches",
                details={"next_index": state.next_index, "batches": len(state.batches)},
            )
        logger.info(
            f"Resuming extraction at batch {state.next_index + 1}/{len(state.batches)} "
            f"with {len(state.collected_transactions)} transactions already collected"
        )
        executor = self._executor(file_name, file_type, cancel_token)
        result = await executor.run(
            state.batches,
            start_index=state.next_index,
            prior_items=state.collected_transactions,
            prior_failed_batches=state.failed_batches,
            prior_retried_batches=state.retried_batches,
            expected_items=sum(b.row_count for b in state.batches),
        )
        return self._check_extraction(result)

    def _check_extraction(self, result: ExecutionResult) -> ExecutionResult:
        if not result.items:
            raise NoTransactionsError(
                "No transactions could be extracted from the statement",
                details={
                    "total_batches": result.total_batches,
                    "failed_batches": len(result.failed_batches),
                },
            )
        if result.failed_batches:
            ranges = ", ".join(f"{f.row_range.start}-{f.row_range.end}" for f in result.failed_batches)
            logger.warning(f"{len(result.failed_batches)} batches failed permanently (rows {ranges})")
        logger.info(f"Extracted {len(result.items)} transactions from {result.total_batches} batches")
        return result

    async def categorize(
        self,
        transactions: Sequence[Transaction],
        categories: Sequence[Category],
        user_rules: Sequence[UserRule] = (),
    ) -> CategorizationResult:
        """
        Categorize transactions: cascade first, classifier for the rest.

        Args:
            transactions: Transactions to categorize
            categories: Category catalog
            user_rules: Operator rules for the first cascade stage

        Returns:
            CategorizationResult covering every transaction exactly once
        """
        matched, unresolved = run_cascade(transactions, categories, user_rules, self.cascade_config)

        runner = ClassifierBatchRunner(
            self.classifier_service,
            batch_size=self.settings.classifier_batch_size,
            concurrency=self.settings.classifier_concurrency,
            retry_policy=self.retry_policy,
        )
        classification = await runner.classify(unresolved, categories)
        return CategorizationResult(cascade_matched=matched, classification=classification)

    def build_report(
        self,
        file_name: str,
        transactions: Sequence[Transaction],
        extraction: ExecutionResult,
        categorization: CategorizationResult,
    ) -> ImportReport:
        """Aggregate extraction and categorization outcomes into one report."""
        results = sorted(
            categorization.cascade_matched + categorization.classification.matched,
            key=lambda r: r.transaction_index,
        )
        source_counts = Counter(r.source for r in results)

        report = ImportReport(
            file_name=file_name,
            total_batches=extraction.total_batches,
            successful_batches=extraction.successful_batches,
            retried_batches=extraction.retried_batches,
            failed_batches=extraction.failed_batches,
            total_transactions=len(transactions),
            results=results,
            source_counts=dict(sorted(source_counts.items())),
            categorized_by_cascade=len(categorization.cascade_matched),
            categorized_by_classifier=len(categorization.classification.matched),
            uncategorized=categorization.classification.unmatched,
            low_confidence_count=sum(1 for r in results if r.needs_review),
        )

        if not report.is_fully_accounted:
            logger.error(
                f"Report does not account for every transaction: {report.categorized_count} categorized, "
                f"{len(report.uncategorized)} uncategorized, {report.total_transactions} total"
            )
        logger.info(
            f"Import of {file_name or 'statement'} complete: {report.categorized_count}/"
            f"{report.total_transactions} categorized ({report.categorized_by_cascade} by rules, "
            f"{report.categorized_by_classifier} by classifier), {len(report.uncategorized)} uncategorized, "
            f"{len(report.failed_batches)} failed batches"
        )
        return report

    async def _finish(
        self,
        extraction: ExecutionResult,
        categories: Sequence[Category],
        user_rules: Sequence[UserRule],
        file_name: str,
        session_id: Optional[str],
    ) -> ImportResult:
        transactions = extraction.items
        if self.persistence is not None and session_id:
            self.persistence.upsert_transactions(session_id, transactions)

        categorization = await self.categorize(transactions, categories, user_rules)
        report = self.build_report(file_name, transactions, extraction, categorization)

        if self.persistence is not None and session_id:
            self.persistence.upsert_categorizations(session_id, report.results, transactions)
        return ImportResult(transactions=transactions, report=report)

    async def run(
        self,
        content: str,
        categories: Sequence[Category],
        user_rules: Sequence[UserRule] = (),
        file_name: str = "",
        file_type: str = "",
        session_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ImportResult:
        """
        Run the full pipeline over statement content.

        Args:
            content: Statement content, header first
            categories: Category catalog
            user_rules: Operator rules
            file_name: Original file name
            file_type: File type label
            session_id: Persistence key; nothing is stored without it
            cancel_token: Token that pauses extraction at the next group boundary

        Returns:
            ImportResult with transactions and the completed report

        Raises:
            NoTransactionsError: If the statement yields no transactions
            ImportPaused: If extraction was paused; carries the resume state
        """
        extraction = await self.extract(content, file_name, file_type, cancel_token)
        return await self._finish(extraction, categories, user_rules, file_name, session_id)

    async def resume(
        self,
        state: ResumeState,
        categories: Sequence[Category],
        user_rules: Sequence[UserRule] = (),
        file_name: str = "",
        file_type: str = "",
        session_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ImportResult:
        """Resume a paused run and finish it like ``run`` would."""
        extraction = await self.resume_extraction(state, file_name, file_type, cancel_token)
        return await self._finish(extraction, categories, user_rules, file_name, session_id)

    async def process_file(
        self,
        file_path: str,
        categories: Optional[Sequence[Category]] = None,
        user_rules: Optional[Sequence[UserRule]] = None,
        session_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ImportResult:
        """
        Read a statement file and run it through the pipeline.

        Categories and user rules default to the configured catalog files.
        """
        file_name = Path(file_path).name
        logger.info(f"Processing statement file: {file_name}")

        content = read_statement_content(file_path)
        if categories is None:
            categories = load_categories(self.settings.categories_path)
        if user_rules is None:
            user_rules = load_user_rules(self.settings.user_rules_path)

        return await self.run(
            content,
            categories,
            user_rules,
            file_name=file_name,
            file_type=detect_file_type(file_name),
            session_id=session_id,
            cancel_token=cancel_token,
        )
