"""
Provider adapters for batch-guard.

Wraps text-generation endpoints behind a single generate() capability.
"""

from .base import GenerateResult, ProviderAdapter
from .openai_adapters import JsonSchemaAdapter, MarkdownSchemaAdapter, build_adapter, classify_error

__all__ = [
    "GenerateResult",
    "ProviderAdapter",
    "JsonSchemaAdapter",
    "MarkdownSchemaAdapter",
    "build_adapter",
    "classify_error",
]
