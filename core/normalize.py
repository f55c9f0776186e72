"""
Normalization of raw extracted fields into Transaction records.
Handles locale-dependent amounts, statement dates and sign protection.
"""
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from core.logger import setup_logger
from core.schema import Transaction

logger = setup_logger(__name__)

_DATE_PATTERN = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{2}|\d{4})$")
_ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _normalize_separators(text: str) -> str:
    """Turn '1.234,56' / '1,234.56' / '1234,56' into '1234.56'."""
    has_dot = "." in text
    has_comma = "," in text

    if has_dot and has_comma:
        # The right-most separator is the decimal one
        if text.rfind(",") > text.rfind("."):
            return text.replace(".", "").replace(",", ".")
        return text.replace(",", "")

    for sep in (",", "."):
        if sep in text:
            head, _, tail = text.rpartition(sep)
            if text.count(sep) > 1 or len(tail) == 3:
                return text.replace(sep, "")
            return f"{head.replace(sep, '')}.{tail}"

    return text


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a raw amount into a Decimal.

    Accepts numbers and strings in both Turkish ("1.234,56") and English
    ("1,234.56") notation, currency markers, a leading sign, a trailing
    minus or accounting parentheses.

    Args:
        value: Raw amount value (string or number)

    Returns:
        Decimal value or None if the value is empty or unparseable
    """
    if _is_missing(value) or isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))

    text = str(value).strip().replace("\xa0", "").replace(" ", "")

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    if text.endswith("-"):
        negative = True
        text = text[:-1]

    # Drop currency codes and symbols
    cleaned = "".join(ch for ch in text if ch.isdigit() or ch in ".,-+")
    if cleaned.startswith("-"):
        negative = not negative
        cleaned = cleaned[1:]
    cleaned = cleaned.lstrip("+")

    if not cleaned or not any(ch.isdigit() for ch in cleaned):
        logger.warning(f"Failed to parse amount: '{value}' - no numeric content")
        return None

    try:
        result = Decimal(_normalize_separators(cleaned))
    except InvalidOperation:
        logger.warning(f"Failed to parse amount: '{value}'")
        return None

    return -result if negative else result


def parse_statement_date(value: Any) -> Optional[str]:
    """
    Normalize DD.MM.YYYY style dates to ISO format.

    Args:
        value: Raw date value

    Returns:
        ISO date string, the stripped original when the format is unknown,
        or None for empty input
    """
    if _is_missing(value):
        return None

    text = str(value).strip()
    if _ISO_DATE_PATTERN.match(text):
        return text[:10]

    match = _DATE_PATTERN.match(text)
    if not match:
        return text

    day, month, year = match.groups()
    if len(year) == 2:
        year = f"20{year}"
    return f"{year}-{int(month):02d}-{int(day):02d}"


def _optional_string(raw: Dict[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    if _is_missing(value):
        return None
    return str(value).strip()


def normalize_transaction(raw: Dict[str, Any], index: int, default_row_number: int) -> Transaction:
    """
    Build a Transaction from one extracted row.

    Args:
        raw: Raw fields returned by the extraction service
        index: Global transaction index assigned by the worker
        default_row_number: Row number to use when the extractor gives none

    Returns:
        Normalized Transaction
    """
    amount = parse_amount(raw.get("amount"))
    original_amount = parse_amount(raw.get("original_amount"))

    # The sign written in the statement wins over the extractor's reading
    if amount is not None and original_amount is not None:
        if amount != 0 and original_amount != 0 and (amount > 0) != (original_amount > 0):
            logger.warning(
                f"Sign mismatch for transaction {index}: amount={amount}, "
                f"original={original_amount}; keeping original sign"
            )
            amount = original_amount
    elif amount is None:
        amount = original_amount

    needs_review = bool(raw.get("needs_review", False))
    if amount is None:
        logger.warning(f"Transaction {index} has no parseable amount, flagged for review")
        amount = Decimal("0")
        needs_review = True

    row_number = default_row_number
    raw_row = raw.get("row_number")
    if isinstance(raw_row, (int, float)) and not isinstance(raw_row, bool) and raw_row >= 1:
        row_number = int(raw_row)

    original_date = _optional_string(raw, "original_date") or _optional_string(raw, "date")

    return Transaction(
        index=index,
        row_number=row_number,
        date=parse_statement_date(raw.get("date")),
        original_date=original_date,
        description=_optional_string(raw, "description") or "",
        amount=amount,
        original_amount=_optional_string(raw, "original_amount"),
        counterparty=_optional_string(raw, "counterparty"),
        reference=_optional_string(raw, "reference"),
        balance=parse_amount(raw.get("balance")),
        label=_optional_string(raw, "label"),
        transaction_type=_optional_string(raw, "transaction_type"),
        needs_review=needs_review,
    )
