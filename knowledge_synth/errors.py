"""
Exception types shared by the synthesis pipeline.

ConfigurationError marks failures a retry cannot fix (missing prompt
templates, missing API keys); the scheduler fails such jobs immediately.
"""
from __future__ import annotations


class SynthesisError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(SynthesisError):
    """Required configuration or seeded data is missing."""


class MalformedResponseError(SynthesisError):
    """The AI collaborator returned output that does not match the response contract."""

    def __init__(self, message: str, raw_response: str | None = None):
        super().__init__(message)
        self.raw_response = raw_response


class EmbeddingError(SynthesisError):
    """The embedding provider returned an unusable result."""
