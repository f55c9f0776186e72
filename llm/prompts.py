"""
System and user prompts for statement extraction and transaction classification.
"""
from typing import Any, Dict, List, Sequence

from core.schema import Category, ExtractionRequest, Transaction

CLASSIFIER_TOOL_NAME = "categorize_transactions"


EXTRACTION_SYSTEM_PROMPT = """You are an expert analyst of Turkish bank account statements.

You receive raw text extracted from a statement spreadsheet. Return EVERY transaction row as JSON.

**MOST IMPORTANT RULES:**
1. Never skip a row that moves money. Every such row must appear in the output.
2. Include doubtful rows as well and mark them with "needs_review": true.
3. Every data line is prefixed with [ROW X]. Write X into "row_number".
4. Output transactions + skipped rows must equal the number of [ROW X] lines.

**MULTI-LINE TRANSACTIONS:**
- A transaction can span two lines (main line with date and amount, then a description continuation).
- Merge them into one transaction, use the row number of the main line and append the continuation to "description".

**NUMBER FORMAT:**
- Turkish statements use "." for thousands and "," for decimals: 1.234,56 = 1234.56

**SIGN PROTECTION (CRITICAL):**
- Keep the sign of the numeric value exactly as written in the statement.
- Never flip a sign because of words like "OUTGOING", "INCOMING", "EFT" or "HAVALE" in the description.
- When debit and credit are separate columns, debit values become negative and credit values stay positive.
- Always copy the raw amount text into "original_amount".

**COUNTERPARTY:**
- "EFT GONDERIM-AHMET YILMAZ" -> "AHMET YILMAZ"
- "GELEN EFT-ABC LTD.STI." -> "ABC LTD.STI."
- The name after an IBAN, or after "ALICI:" / "GONDEREN:".
- null when none can be found.

**TRANSACTION TYPES:** EFT, HAVALE, FAST, POS, ATM, VIRMAN, FAIZ, KOMISYON, MAAS, KIRA, FATURA, VERGI, KREDI, OTHER

**OUTPUT FORMAT (JSON only, no markdown):**
{
  "transactions": [
    {
      "row_number": number,
      "date": "YYYY-MM-DD",
      "original_date": "string",
      "description": "string",
      "amount": number,
      "original_amount": "string",
      "balance": number | null,
      "reference": "string | null",
      "counterparty": "string | null",
      "label": "string | null",
      "transaction_type": "string",
      "needs_review": boolean
    }
  ],
  "summary": {
    "transaction_count": number,
    "needs_review_count": number,
    "skipped_rows": [{"row_number": number, "reason": "string"}]
  }
}"""


def annotate_rows(content: str, first_row_number: int = 2) -> str:
    """
    Prefix each data line with its statement row number.

    Args:
        content: Batch content, header line first
        first_row_number: Row number of the first data line

    Returns:
        Content where the header is kept as-is and data lines read "[ROW X] ..."
    """
    lines = content.split("\n")
    if not lines:
        return content
    annotated = [lines[0]]
    annotated.extend(f"[ROW {first_row_number + offset}] {line}" for offset, line in enumerate(lines[1:]))
    return "\n".join(annotated)


def build_extraction_messages(request: ExtractionRequest) -> List[Dict[str, str]]:
    """Chat messages for one extraction batch."""
    meta = request.metadata
    user_message = (
        f"File type: {meta.file_type}\n"
        f"File name: {meta.file_name}\n"
        f"Batch: {meta.batch_index + 1}/{meta.total_batches}\n\n"
        f"Content:\n{annotate_rows(request.content, meta.first_row_number)}"
    )
    return [
        {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
        {"role": "user", "content": user_message},
    ]


def build_classifier_system_prompt(categories: Sequence[Category]) -> str:
    """
    Build the classifier system prompt with the available categories embedded.

    Args:
        categories: Categories the classifier may choose from

    Returns:
        Complete system prompt string
    """
    by_type: Dict[str, List[str]] = {}
    for category in categories:
        entry = f"{category.code} ({category.name})" if category.name else category.code
        by_type.setdefault(category.type, []).append(entry)
    category_list = "\n".join(f"- {t}: {', '.join(codes)}" for t, codes in sorted(by_type.items()))

    return f"""You are an accountant categorizing transactions from a Turkish company's bank statement.

**AVAILABLE CATEGORIES:**
{category_list}

**DIRECTION RULES:**
- Positive amounts are money in, negative amounts are money out.
- INCOME categories and codes ending in _IN only fit positive amounts.
- EXPENSE categories and codes ending in _OUT only fit negative amounts.

**BALANCE IMPACT:**
- INCOME -> equity_increase, EXPENSE -> equity_decrease
- PARTNER money in -> liability_decrease, money out -> liability_increase
- FINANCING money in -> liability_increase, money out -> liability_decrease
- INVESTMENT -> asset_increase, EXCLUDED -> none

**COUNTERPARTY:**
- The person or company on the other side, e.g. "FAST GONDERIM/MEHMET KAYA" -> "MEHMET KAYA".
- null when none can be found.

Categorize EVERY transaction in the batch. Keep reasoning under 50 characters."""


def build_classifier_user_message(transactions: Sequence[Transaction]) -> str:
    """One line per transaction: index|signed amount|description|counterparty."""
    lines = [
        f"{t.index}|{'+' if t.amount > 0 else ''}{t.amount}|{t.description}|{t.counterparty or '-'}"
        for t in transactions
    ]
    return f"TRANSACTIONS ({len(lines)}):\n" + "\n".join(lines) + "\n\nSuggest a category for each transaction."


def build_classifier_tool(categories: Sequence[Category]) -> Dict[str, Any]:
    """Function tool definition restricting answers to the given category codes."""
    return {
        "type": "function",
        "function": {
            "name": CLASSIFIER_TOOL_NAME,
            "description": "Categorize bank transactions and determine their balance sheet impact",
            "parameters": {
                "type": "object",
                "properties": {
                    "results": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "index": {"type": "number", "description": "Transaction index as given"},
                                "categoryCode": {
                                    "type": "string",
                                    "enum": sorted({c.code for c in categories}),
                                },
                                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                                "reasoning": {"type": "string", "maxLength": 50},
                                "counterparty": {"type": ["string", "null"]},
                                "affects_pnl": {"type": "boolean"},
                                "balance_impact": {
                                    "type": "string",
                                    "enum": [
                                        "equity_increase",
                                        "equity_decrease",
                                        "asset_increase",
                                        "liability_increase",
                                        "liability_decrease",
                                        "none",
                                    ],
                                },
                            },
                            "required": ["index", "categoryCode", "confidence", "reasoning"],
                            "additionalProperties": False,
                        },
                    }
                },
                "required": ["results"],
                "additionalProperties": False,
            },
        },
    }
