"""Thin async wrapper around the OpenAI Responses API."""

from __future__ import annotations

import base64
import logging
from typing import Any

import openai
from openai import AsyncOpenAI

from .config import ModelConfig
from .retry import retry_with_backoff

LOGGER = logging.getLogger(__name__)

# Network failures and any non-2xx status are worth another attempt
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    openai.APIConnectionError,
    openai.APIStatusError,
)


class LLMClient:
    """Issue single prompt (+ optional PDF attachment) requests to the model."""

    def __init__(self, config: ModelConfig, client: Any | None = None) -> None:
        self.model = config.model
        self._max_attempts = config.max_attempts
        self._base_delay = config.base_delay
        # Retries are handled here so every caller gets the same policy
        self._client = client or AsyncOpenAI(
            api_key=config.api_key,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    async def complete(
        self,
        prompt: str,
        *,
        attachment: bytes | None = None,
        filename: str = "document.pdf",
        json_output: bool = False,
        max_output_tokens: int | None = None,
    ) -> str:
        """Return the model's text output for ``prompt``.

        Raises:
            openai.OpenAIError: When the request still fails after retries.
        """

        content: list[dict[str, Any]] = [{"type": "input_text", "text": prompt}]
        if attachment is not None:
            encoded = base64.b64encode(attachment).decode("ascii")
            content.append(
                {
                    "type": "input_file",
                    "filename": filename,
                    "file_data": f"data:application/pdf;base64,{encoded}",
                },
            )

        request: dict[str, Any] = {
            "model": self.model,
            "input": [{"role": "user", "content": content}],
        }
        if json_output:
            request["text"] = {"format": {"type": "json_object"}}
        if max_output_tokens:
            request["max_output_tokens"] = max_output_tokens

        async def _call() -> str:
            response = await self._client.responses.create(**request)
            return _output_text(response)

        return await retry_with_backoff(
            _call,
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            retry_on=TRANSIENT_ERRORS,
            description=f"Model request ({self.model})",
        )


def _output_text(response: Any) -> str:
    output = getattr(response, "output_text", None)
    if not output:
        try:
            output = response.output[0].content[0].text
        except (AttributeError, IndexError, TypeError):
            LOGGER.warning("Model response carried no text output")
            return ""
    return output or ""
