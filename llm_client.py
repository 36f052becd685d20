"""
llm_client.py - Schema-constrained completion boundary.

This is the only module that talks to OpenAI. Callers hand over a message list
and a strict JSON-schema response format and get back a parsed dict, or a
`CompletionError`. Extraction and Q&A convert that into their own stable
error categories, so no openai exception type leaves this package.

No automatic retries: the client is built with max_retries=0 and a bounded
timeout, and failures surface to the caller.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import openai

from errors import ConfigurationError
from logging_config import get_logger

logger = get_logger(__name__)


class CompletionError(Exception):
    """Provider call failed or returned something other than schema JSON."""

    def __init__(self, reason: str, cause: Optional[BaseException] = None) -> None:
        self.reason = reason
        self.cause = cause
        super().__init__(reason)


def json_schema_format(name: str, schema: dict[str, Any]) -> dict[str, Any]:
    """Wrap a JSON schema as a strict chat-completions `response_format`."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": name,
            "strict": True,
            "schema": schema,
        },
    }


class CompletionClient:
    """Thin wrapper exposing one capability: complete(messages, schema) -> dict."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        timeout: float = 60.0,
        client: Any = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY not configured")
            client = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._client = client

    def complete(
        self,
        messages: list[dict[str, Any]],
        response_format: dict[str, Any],
        *,
        model: str,
        temperature: Optional[float] = None,
    ) -> dict[str, Any]:
        schema_name = (response_format.get("json_schema") or {}).get("name", "unknown")
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "response_format": response_format,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature

        try:
            response = self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            logger.error(
                "completion_provider_error | model=%s | schema=%s | error_type=%s | error=%s",
                model,
                schema_name,
                type(exc).__name__,
                exc,
            )
            raise CompletionError(f"provider error: {type(exc).__name__}", exc) from exc

        choices = getattr(response, "choices", None) or []
        if not choices:
            logger.error("completion_empty | model=%s | schema=%s | reason='no choices'", model, schema_name)
            raise CompletionError("no choices returned")

        message = choices[0].message
        refusal = getattr(message, "refusal", None)
        if refusal:
            logger.warning("completion_refused | model=%s | schema=%s | refusal=%r", model, schema_name, refusal)
            raise CompletionError("model refused")

        content = getattr(message, "content", None)
        if not content:
            logger.error("completion_empty | model=%s | schema=%s | reason='no content'", model, schema_name)
            raise CompletionError("empty content")

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error(
                "completion_invalid_json | model=%s | schema=%s | error=%s | preview=%r",
                model,
                schema_name,
                exc,
                content[:200],
            )
            raise CompletionError("response is not valid JSON", exc) from exc

        if not isinstance(parsed, dict):
            logger.error(
                "completion_invalid_shape | model=%s | schema=%s | type=%s",
                model,
                schema_name,
                type(parsed).__name__,
            )
            raise CompletionError("response is not a JSON object")

        usage = getattr(response, "usage", None)
        logger.info(
            "completion_ok | model=%s | schema=%s | prompt_tokens=%s | completion_tokens=%s",
            model,
            schema_name,
            getattr(usage, "prompt_tokens", None),
            getattr(usage, "completion_tokens", None),
        )
        return parsed


def build_completion_client(settings: Any) -> CompletionClient:
    return CompletionClient(settings.openai_api_key, timeout=settings.openai_timeout_seconds)
