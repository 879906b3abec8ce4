"""Language-model client used for scoring."""

from .client import GeminiRestClient, GenerationResult, extract_json

__all__ = ["GeminiRestClient", "GenerationResult", "extract_json"]
