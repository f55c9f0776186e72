"""
Chat-completions client for the LLM gateway using direct REST calls.

The client performs exactly one HTTP request per call. Retries belong to the
batch workers, which decide when a failed batch is worth another attempt.
"""
import json
from typing import Any, Dict, List, Optional

import requests
import urllib3

from core.config import get_settings
from core.exceptions import ConfigurationError, LLMError
from core.logger import setup_logger

logger = setup_logger(__name__)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code block, if any."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped

    lines = stripped.split("\n")
    if lines[0].startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip() == "```":
        lines = lines[:-1]
    return "\n".join(lines).strip()


class LLMGatewayClient:
    """Thin wrapper around an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        gateway_url: Optional[str] = None,
        timeout: Optional[int] = None,
        verify_ssl: Optional[bool] = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.llm_api_key
        if not self.api_key:
            raise ConfigurationError(
                "LLM_API_KEY environment variable not set",
                details={"required_key": "LLM_API_KEY"},
            )

        self.model = model
        self.gateway_url = gateway_url or settings.llm_gateway_url
        self.timeout = timeout or settings.llm_timeout
        self.verify_ssl = settings.llm_verify_ssl if verify_ssl is None else verify_ssl

        if not self.verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        logger.info(f"Initialized LLM gateway client with model: {self.model}, gateway: {self.gateway_url}")

    def complete(
        self,
        messages: List[Dict[str, str]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Dict[str, Any]] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send one chat completion request.

        Args:
            messages: Chat messages (role/content)
            tools: Optional function tool definitions
            tool_choice: Optional forced tool selection
            temperature: Optional sampling temperature

        Returns:
            Decoded completion payload

        Raises:
            LLMError: On timeout, HTTP error, connection problem or non-JSON body
        """
        payload: Dict[str, Any] = {"model": self.model, "messages": messages}
        if tools:
            payload["tools"] = tools
        if tool_choice:
            payload["tool_choice"] = tool_choice
        if temperature is not None:
            payload["temperature"] = temperature

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        try:
            response = requests.post(
                self.gateway_url,
                headers=headers,
                data=json.dumps(payload),
                verify=self.verify_ssl,
                timeout=self.timeout,
            )
            response.raise_for_status()
            completion = response.json()

        except requests.exceptions.Timeout as e:
            logger.error(f"Gateway request timeout after {self.timeout}s: {e}")
            raise LLMError(
                f"Gateway request timeout after {self.timeout}s",
                details={"gateway_url": self.gateway_url, "timeout": self.timeout},
            )

        except requests.exceptions.HTTPError as e:
            status = getattr(e.response, "status_code", None)
            logger.error(f"Gateway HTTP error: {e}")
            if status == 429:
                message = "Gateway rate limit exceeded"
            elif status == 402:
                message = "Gateway credits exhausted"
            else:
                message = f"Gateway returned HTTP error: {e}"
            raise LLMError(
                message,
                details={
                    "gateway_url": self.gateway_url,
                    "status_code": status,
                    "response_text": getattr(e.response, "text", None),
                },
            )

        except requests.exceptions.RequestException as e:
            logger.error(f"Gateway request failed: {e}")
            raise LLMError(
                f"Failed to connect to gateway: {str(e)}",
                details={"gateway_url": self.gateway_url, "error": str(e)},
            )

        except ValueError as e:
            logger.error(f"Failed to parse gateway response as JSON: {e}")
            raise LLMError(
                f"Gateway returned invalid JSON: {e}",
                details={"raw_response": response.text[:500]},
            )

        if "usage" in completion:
            usage = completion["usage"]
            logger.debug(
                f"Token usage - Input: {usage.get('prompt_tokens', 'N/A')}, "
                f"Output: {usage.get('completion_tokens', 'N/A')}"
            )
        return completion

    def message_content(self, completion: Dict[str, Any]) -> str:
        """Assistant text of a completion, fences removed."""
        try:
            content = completion["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None

        if not content:
            logger.error(f"Response keys: {list(completion.keys())}")
            raise LLMError("Unexpected response structure: no message content")
        return strip_code_fences(content)

    def tool_arguments(self, completion: Dict[str, Any], tool_name: str) -> Dict[str, Any]:
        """
        Decoded arguments of the named tool call.

        Raises:
            LLMError: If the tool was not called or its arguments are not JSON
        """
        try:
            calls = completion["choices"][0]["message"].get("tool_calls") or []
        except (KeyError, IndexError, TypeError, AttributeError):
            calls = []

        for call in calls:
            function = call.get("function", {})
            if function.get("name") != tool_name:
                continue
            try:
                return json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError as e:
                raise LLMError(
                    f"Tool arguments are not valid JSON: {e}",
                    details={"tool": tool_name},
                )

        raise LLMError(f"Gateway response has no '{tool_name}' tool call", details={"tool": tool_name})
