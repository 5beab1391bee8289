"""
AI Inference Gateway

Calls an OpenAI-compatible chat completions endpoint (OpenRouter by
default) and returns a tagged outcome. Transport problems never raise;
they come back as Unavailable so the pipeline can apologize instead.
"""

import logging
from typing import Any

import httpx

from conversation_engine.ai.context import Prompt
from conversation_engine.ai.schema import (
    InferenceOutcome,
    Unavailable,
    parse_assistant_output,
)
from conversation_engine.errors import InferenceUnavailable

logger = logging.getLogger(__name__)


class InferenceGateway:
    """
    Chat completions client.

    One AsyncClient is shared by all calls; every call is bounded by
    `timeout` seconds.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        default_model: str = "deepseek/deepseek-chat",
        timeout: float = 30.0,
        max_tokens: int = 1000,
        default_temperature: float = 0.7,
        app_url: str | None = None,
        app_title: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.default_temperature = default_temperature
        self.app_url = app_url
        self.app_title = app_title
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            }
            # OpenRouter attribution headers
            if self.app_url:
                headers["HTTP-Referer"] = self.app_url
            if self.app_title:
                headers["X-Title"] = self.app_title

            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self.transport,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def complete(self, prompt: Prompt) -> InferenceOutcome:
        """
        Run one inference.

        Args:
            prompt: Prompt built by the ContextBuilder

        Returns:
            Parsed, Unparsed or Unavailable
        """
        try:
            content = await self._request_completion(prompt)
        except InferenceUnavailable as e:
            logger.warning(
                f"Inference unavailable: {e.reason}",
                extra={**prompt.metadata, "reason": e.reason},
            )
            return Unavailable(reason=e.reason)

        outcome = parse_assistant_output(content)
        logger.info(
            f"Inference completed: {type(outcome).__name__}",
            extra={**prompt.metadata, "chars": len(content)},
        )
        return outcome

    async def _request_completion(self, prompt: Prompt) -> str:
        """POST /chat/completions and return the text of the first choice."""
        if not self.api_key:
            raise InferenceUnavailable("missing_credentials")

        model = prompt.model or self.default_model
        payload: dict[str, Any] = {
            "model": model,
            "messages": prompt.to_messages(),
            "temperature": prompt.temperature if prompt.temperature is not None else self.default_temperature,
            "max_tokens": self.max_tokens,
        }

        client = await self._get_client()
        logger.debug(f"Inference request: model={model}, messages_count={len(payload['messages'])}")

        try:
            response = await client.post(f"{self.base_url}/chat/completions", json=payload)
        except httpx.TimeoutException as e:
            raise InferenceUnavailable("timeout") from e
        except httpx.RequestError as e:
            raise InferenceUnavailable(f"transport_error: {type(e).__name__}") from e

        if response.status_code != 200:
            logger.error(
                f"Inference API error: {response.status_code}",
                extra={"body": response.text[:500]},
            )
            raise InferenceUnavailable(f"http_{response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise InferenceUnavailable("invalid_json_envelope") from e

        if not isinstance(data, dict):
            raise InferenceUnavailable("invalid_envelope")
        choices = data.get("choices") or []
        if not isinstance(choices, list):
            raise InferenceUnavailable("invalid_envelope")
        if not choices:
            raise InferenceUnavailable("empty_response")

        first = choices[0]
        message = first.get("message") if isinstance(first, dict) else None
        if not isinstance(message, dict):
            raise InferenceUnavailable("invalid_envelope")
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise InferenceUnavailable("invalid_envelope")
        if not content.strip():
            raise InferenceUnavailable("empty_response")

        return content
