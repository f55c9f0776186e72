"""
Transaction classification through the LLM gateway using a forced tool call.
"""
from typing import Optional

from pydantic import ValidationError

from core.config import get_settings
from core.exceptions import LLMError
from core.logger import setup_logger
from core.schema import ClassifierRequest, ClassifierResponse
from llm.client import LLMGatewayClient
from llm.prompts import (
    CLASSIFIER_TOOL_NAME,
    build_classifier_system_prompt,
    build_classifier_tool,
    build_classifier_user_message,
)

logger = setup_logger(__name__)


class LLMClassifierService:
    """Classifier service backed by the gateway; one request per call, no retries."""

    def __init__(self, client: Optional[LLMGatewayClient] = None, temperature: float = 0.1):
        self._client = client
        self.temperature = temperature

    @property
    def client(self) -> LLMGatewayClient:
        if self._client is None:
            self._client = LLMGatewayClient(model=get_settings().classifier_model)
        return self._client

    def classify(self, request: ClassifierRequest) -> ClassifierResponse:
        """
        Ask the classifier for one category per transaction.

        Args:
            request: Transactions and the categories to choose from

        Returns:
            ClassifierResponse with the decisions the model returned

        Raises:
            LLMError: On gateway failures or a malformed tool call
        """
        if not request.transactions:
            return ClassifierResponse()

        logger.info(f"Classifying batch of {len(request.transactions)} transactions")

        completion = self.client.complete(
            messages=[
                {"role": "system", "content": build_classifier_system_prompt(request.categories)},
                {"role": "user", "content": build_classifier_user_message(request.transactions)},
            ],
            tools=[build_classifier_tool(request.categories)],
            tool_choice={"type": "function", "function": {"name": CLASSIFIER_TOOL_NAME}},
            temperature=self.temperature,
        )
        arguments = self.client.tool_arguments(completion, CLASSIFIER_TOOL_NAME)

        try:
            response = ClassifierResponse(**arguments)
        except ValidationError as e:
            logger.error(f"Classifier response validation failed: {e}")
            raise LLMError(f"Malformed classifier response: {e.error_count()} errors")

        logger.info(f"Batch processed: {len(response.results)} results")
        return response
