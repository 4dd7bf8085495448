"""Model providers."""
from .base import Provider
from .openai_provider import OpenAIProvider, resolve_api_key

__all__ = ["OpenAIProvider", "Provider", "resolve_api_key"]
