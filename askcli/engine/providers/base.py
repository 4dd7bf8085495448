"""Abstract base for model providers.

The agent loop talks to the model only through Provider.complete():
one round trip carrying the whole conversation and the tool catalog,
returning either assistant text or a batch of tool calls.
"""
from __future__ import annotations

import abc
import logging
from typing import Any

from ..models import ModelResponse

logger = logging.getLogger(__name__)


class Provider(abc.ABC):
    """Abstract model provider interface.

    Implementations wrap a specific model API:
    - OpenAIProvider: any OpenAI-compatible chat completions endpoint
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'openai')."""

    @abc.abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        model: str,
    ) -> ModelResponse:
        """Send one chat completion request.

        Raises ModelAPIError when the API rejects the request.
        """

    async def shutdown(self) -> None:
        """Release network resources.

        Default no-op. Override in providers that hold a client.
        """
        return None
