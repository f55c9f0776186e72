"""
Per-batch extraction with bounded retry.
"""
import asyncio
from typing import List, Protocol

from core.batching import FIRST_DATA_ROW, row_range_for_batch
from core.exceptions import EmptyExtractionError, ExtractionError
from core.logger import setup_logger
from core.normalize import normalize_transaction
from core.retry import RetryPolicy
from core.schema import (
    ExtractionMetadata,
    ExtractionRequest,
    ExtractionResponse,
    RawBatch,
    RowRange,
    Transaction,
)
from services.executor import BatchOutcome

logger = setup_logger(__name__)


class ExtractionService(Protocol):
    def extract(self, request: ExtractionRequest) -> ExtractionResponse: ...


class RetryingBatchWorker:
    """
    Sends one batch to the extraction service, retrying transient failures.

    The service is a blocking callable; it runs in the loop's default thread
    pool so sibling batches keep progressing while one waits on the network
    or sleeps through backoff.
    """

    def __init__(
        self,
        extraction_service: ExtractionService,
        retry_policy: RetryPolicy,
        batch_size: int,
        file_name: str = "",
        file_type: str = "",
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be a positive integer")
        self.extraction_service = extraction_service
        self.retry_policy = retry_policy
        self.batch_size = batch_size
        self.file_name = file_name
        self.file_type = file_type

    def row_range(self, batch: RawBatch) -> RowRange:
        return row_range_for_batch(batch.batch_index, self.batch_size, batch.row_count)

    async def process(self, batch: RawBatch, total_batches: int) -> BatchOutcome:
        """
        Extract one batch.

        Args:
            batch: Batch to extract
            total_batches: Number of batches in the run, passed as metadata

        Returns:
            BatchOutcome with globally indexed transactions, or a terminal
            failure once all attempts are used up
        """
        label = f"Batch {batch.batch_index + 1}/{total_batches}"
        request = ExtractionRequest(
            content=batch.content,
            metadata=ExtractionMetadata(
                batch_index=batch.batch_index,
                total_batches=total_batches,
                file_name=self.file_name,
                file_type=self.file_type,
                first_row_number=batch.batch_index * self.batch_size + FIRST_DATA_ROW,
            ),
        )

        attempts = 0
        try:
            async for attempt in self.retry_policy.retrying(label):
                with attempt:
                    attempts += 1
                    loop = asyncio.get_running_loop()
                    response = await loop.run_in_executor(
                        None, self.extraction_service.extract, request
                    )
                    transactions = self._accept(batch, response)
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

        if attempts > 1:
            logger.info(f"{label} succeeded on attempt {attempts}")
        logger.debug(f"{label}: {len(transactions)} transactions")

        return BatchOutcome(
            batch_index=batch.batch_index,
            items=transactions,
            success=True,
            retry_count=attempts - 1,
            was_retried=attempts > 1,
        )

    def _accept(self, batch: RawBatch, response: ExtractionResponse) -> List[Transaction]:
        """Validate a response and assign global indices to its rows."""
        if not response.success:
            raise EmptyExtractionError(
                response.error or "Extraction service reported failure",
                {"batch_index": batch.batch_index},
            )
        if not response.transactions:
            raise EmptyExtractionError(
                "Extraction returned no transactions",
                {"batch_index": batch.batch_index},
            )
        if len(response.transactions) > batch.row_count:
            raise ExtractionError(
                f"Extraction returned {len(response.transactions)} rows for a batch of {batch.row_count}",
                {"batch_index": batch.batch_index},
            )

        base = batch.batch_index * self.batch_size
        transactions = [
            normalize_transaction(raw, index=base + offset, default_row_number=base + offset + FIRST_DATA_ROW)
            for offset, raw in enumerate(response.transactions)
        ]

        # Row numbers key stored rows, so they must be distinct and inside the batch
        row_range = self.row_range(batch)
        row_numbers = [t.row_number for t in transactions]
        if len(set(row_numbers)) != len(row_numbers) or any(
            not row_range.start <= n <= row_range.end for n in row_numbers
        ):
            logger.warning(
                f"Batch {batch.batch_index + 1}: extracted row numbers {row_numbers} do not fit rows "
                f"{row_range.start}-{row_range.end}, numbering by position"
            )
            transactions = [
                t.model_copy(update={"row_number": base + offset + FIRST_DATA_ROW})
                for offset, t in enumerate(transactions)
            ]
        return transactions
