"""
Statement row extraction through the LLM gateway.
"""
import json
from typing import Any, Dict, List, Optional, Tuple

from core.config import get_settings
from core.exceptions import LLMError
from core.logger import setup_logger
from core.schema import ExtractionRequest, ExtractionResponse
from llm.client import LLMGatewayClient, strip_code_fences
from llm.prompts import build_extraction_messages

logger = setup_logger(__name__)


def _salvage_array(text: str) -> Optional[List[Dict[str, Any]]]:
    """Recover a transactions array from text whose outer object is broken."""
    first, last = text.find("["), text.rfind("]")
    if first == -1 or last <= first:
        return None

    array_text = text[first:last + 1]
    try:
        return json.loads(array_text)
    except json.JSONDecodeError:
        pass

    # Truncated output: cut after the last complete object
    cut = array_text.rfind("},")
    if cut <= 0:
        return None
    try:
        return json.loads(array_text[:cut + 1] + "]")
    except json.JSONDecodeError:
        return None


def parse_extraction_text(text: str) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """
    Parse the model's answer into raw transaction rows.

    Tries the outermost JSON object first, then the outermost array, then
    an array cut back to its last complete element.

    Args:
        text: Assistant message content

    Returns:
        Tuple of (transaction dicts, summary or None)

    Raises:
        LLMError: If no transactions could be recovered at all
    """
    cleaned = strip_code_fences(text)

    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first != -1 and last > first:
        try:
            parsed = json.loads(cleaned[first:last + 1])
            if isinstance(parsed, dict):
                rows = parsed.get("transactions") or []
                return [r for r in rows if isinstance(r, dict)], parsed.get("summary")
        except json.JSONDecodeError:
            logger.debug("Extraction object did not parse, trying array recovery")

    rows = _salvage_array(cleaned)
    if rows is None:
        raise LLMError("Could not parse extraction response", details={"preview": cleaned[:200]})

    logger.warning(f"Recovered {len(rows)} transactions from a malformed extraction response")
    return [r for r in rows if isinstance(r, dict)], None


class LLMExtractionService:
    """Extraction service backed by the gateway; one request per call, no retries."""

    def __init__(self, client: Optional[LLMGatewayClient] = None):
        self._client = client

    @property
    def client(self) -> LLMGatewayClient:
        if self._client is None:
            self._client = LLMGatewayClient(model=get_settings().extraction_model)
        return self._client

    def extract(self, request: ExtractionRequest) -> ExtractionResponse:
        """
        Extract the transactions of one batch.

        Args:
            request: Batch content and metadata

        Returns:
            ExtractionResponse; unparseable answers come back with success=False

        Raises:
            LLMError: On gateway failures
        """
        meta = request.metadata
        logger.info(f"Extracting batch {meta.batch_index + 1}/{meta.total_batches} of {meta.file_name}")

        completion = self.client.complete(build_extraction_messages(request))
        text = self.client.message_content(completion)

        try:
            rows, summary = parse_extraction_text(text)
        except LLMError as e:
            logger.error(f"Batch {meta.batch_index + 1}: {e.message}")
            return ExtractionResponse(success=False, error=e.message)

        return ExtractionResponse(success=True, transactions=rows, summary=summary)
