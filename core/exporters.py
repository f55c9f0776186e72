"""
Excel export of a finished import.
Writes the categorized transactions plus a sheet listing rows lost to failed batches.
"""
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from core.config import get_settings
from core.exceptions import ExportError
from core.logger import setup_logger
from core.schema import ImportReport, RuleMatchResult, Transaction, UnmatchedTransaction

logger = setup_logger(__name__)

TRANSACTIONS_SHEET = "Transactions"
FAILED_ROWS_SHEET = "Failed rows"
RESULT_COLUMN = "Result"


def format_result_column(
    result: Optional[RuleMatchResult],
    unmatched: Optional[UnmatchedTransaction] = None,
) -> str:
    """
    Format the Result column for one transaction.

    Format: Category: {code} | Confidence: {conf}% | Source: {source} | Reason: {reasoning}

    Args:
        result: Match for the transaction, if any
        unmatched: Unmatched record explaining a missing match

    Returns:
        Formatted result string
    """
    if result is None:
        reason = unmatched.reason if unmatched else "not categorized"
        return f"Category: - | Uncategorized: {reason}"

    confidence_pct = int(round(max(0.0, min(1.0, result.confidence)) * 100))
    text = (
        f"Category: {result.category_code} | "
        f"Confidence: {confidence_pct}% | "
        f"Source: {result.source} | "
        f"Reason: {result.reasoning}"
    )
    if result.needs_review:
        text += " | REVIEW"
    return text


def build_transactions_frame(
    transactions: Sequence[Transaction],
    report: ImportReport,
) -> pd.DataFrame:
    """One row per transaction in index order with its categorization."""
    results: Dict[int, RuleMatchResult] = {r.transaction_index: r for r in report.results}
    unmatched: Dict[int, UnmatchedTransaction] = {u.transaction_index: u for u in report.uncategorized}

    rows = []
    for t in sorted(transactions, key=lambda t: t.index):
        result = results.get(t.index)
        rows.append({
            "Row": t.row_number,
            "Date": t.date,
            "Description": t.description,
            "Amount": float(t.amount),
            "Counterparty": t.counterparty,
            "Reference": t.reference,
            "Balance": float(t.balance) if t.balance is not None else None,
            "Category": result.category_code if result else None,
            "Type": result.category_type if result else None,
            "Affects P&L": result.affects_pnl if result else None,
            "Balance impact": result.balance_impact if result else None,
            RESULT_COLUMN: format_result_column(result, unmatched.get(t.index)),
        })
    return pd.DataFrame(rows)


def build_failed_rows_frame(report: ImportReport) -> pd.DataFrame:
    rows = [
        {
            "Batch": failed.batch_index + 1,
            "First row": failed.row_range.start,
            "Last row": failed.row_range.end,
            "Retries": failed.retry_count,
            "Error": failed.error,
        }
        for failed in report.failed_batches
    ]
    return pd.DataFrame(rows, columns=["Batch", "First row", "Last row", "Retries", "Error"])


def export_report_to_excel(
    transactions: Sequence[Transaction],
    report: ImportReport,
    output_path: str,
) -> str:
    """
    Export categorized transactions to Excel.

    Args:
        transactions: Transactions of the run
        report: Report produced for those transactions
        output_path: Output file path

    Returns:
        Path to created file

    Raises:
        ExportError: If writing the workbook fails
    """
    logger.info(f"Exporting {len(transactions)} transactions to {output_path}")

    output_df = build_transactions_frame(transactions, report)
    failed_df = build_failed_rows_frame(report)

    Path(output_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        with pd.ExcelWriter(output_path, engine="xlsxwriter") as writer:
            output_df.to_excel(writer, sheet_name=TRANSACTIONS_SHEET, index=False)
            failed_df.to_excel(writer, sheet_name=FAILED_ROWS_SHEET, index=False)

            workbook = writer.book
            worksheet = writer.sheets[TRANSACTIONS_SHEET]

            # Result column wraps, the rest is sized to content
            wrap_format = workbook.add_format({"text_wrap": True, "valign": "top"})
            result_col_idx = len(output_df.columns) - 1
            worksheet.set_column(result_col_idx, result_col_idx, 80, wrap_format)

            for idx, col in enumerate(output_df.columns[:-1]):
                max_len = len(str(col))
                if len(output_df):
                    max_len = max(output_df[col].astype(str).map(len).max(), max_len)
                worksheet.set_column(idx, idx, min(max_len + 2, 50))

        logger.info(f"Successfully exported to {output_path}")
        return output_path

    except Exception as e:
        logger.error(f"Failed to export Excel: {e}")
        raise ExportError(
            "Failed to export to Excel",
            details={"output_path": output_path, "error": str(e)}
        )


def create_output_filename(file_name: str, base_path: Optional[str] = None) -> str:
    """
    Create timestamped output filename.

    Args:
        file_name: Name of the imported statement
        base_path: Base directory path (defaults to configured storage)

    Returns:
        Full output file path
    """
    if base_path is None:
        base_path = get_settings().storage_path

    Path(base_path).mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
    stem = Path(file_name).stem or "statement"
    return str(Path(base_path) / f"{stem}_categorized_{timestamp}.xlsx")
