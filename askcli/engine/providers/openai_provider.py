"""OpenAI-compatible chat completions provider.

Works against api.openai.com, OpenRouter, or any local server that
speaks the same API; the base URL comes from the config file.
"""
from __future__ import annotations

import logging
import os
from typing import Any

import openai
from openai import AsyncOpenAI

from ..errors import ModelAPIError
from ..models import ModelResponse, ToolCallRequest
from .base import Provider

logger = logging.getLogger(__name__)


def resolve_api_key(base_url: str | None = None) -> str:
    """Find an API key in the environment.

    Order: ASK_API_KEY, then OPENROUTER_API_KEY when the base URL points
    at OpenRouter, then OPENAI_API_KEY.
    """
    key = os.getenv("ASK_API_KEY")
    if key:
        logger.debug("Using ASK_API_KEY")
        return key
    is_openrouter = bool(base_url) and "openrouter" in base_url
    if is_openrouter:
        key = os.getenv("OPENROUTER_API_KEY")
        if key:
            logger.debug("Using OPENROUTER_API_KEY")
            return key
    key = os.getenv("OPENAI_API_KEY")
    if key:
        logger.debug("Using OPENAI_API_KEY")
        return key

    names = ["ASK_API_KEY (universal)"]
    if is_openrouter:
        names += ["OPENROUTER_API_KEY (for OpenRouter)", "OPENAI_API_KEY (for OpenAI)"]
    else:
        names += ["OPENAI_API_KEY (for OpenAI)", "OPENROUTER_API_KEY (if using OpenRouter)"]
    raise ModelAPIError(
        "No API key found. Please set one of the following environment variables:\n"
        + "\n".join(f"  - {n}" for n in names)
    )


class OpenAIProvider(Provider):
    """Chat completions over openai.AsyncOpenAI."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._base_url = base_url
        if client is None:
            client = AsyncOpenAI(
                api_key=api_key or resolve_api_key(base_url),
                base_url=base_url or None,
            )
        self._client = client

    @property
    def name(self) -> str:
        return "openai"

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        model: str,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {"model": model, "messages": messages}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        logger.debug(
            "Chat completion model=%s messages=%d tools=%d",
            model, len(messages), len(tools),
        )
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.AuthenticationError as exc:
            raise ModelAPIError(f"Authentication failed: {exc.message}") from exc
        except openai.RateLimitError as exc:
            raise ModelAPIError(f"Rate limit or quota exceeded: {exc.message}") from exc
        except openai.BadRequestError as exc:
            raise ModelAPIError(
                f"API request rejected (model '{model}'): {exc.message}"
            ) from exc
        except openai.APIError as exc:
            raise ModelAPIError(f"Model API error: {exc}") from exc

        if not response.choices:
            raise ModelAPIError("Model API returned no choices")
        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCallRequest(
                id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "{}",
            )
            for call in (message.tool_calls or [])
            if getattr(call, "function", None) is not None
        ]
        logger.debug(
            "Chat completion finish_reason=%s tool_calls=%d",
            choice.finish_reason, len(tool_calls),
        )
        return ModelResponse(
            text=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason,
        )

    async def shutdown(self) -> None:
        await self._client.close()
