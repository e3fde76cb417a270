"""
Error types and provider error classification for the retrieval engine.

Separates failures that should be retried (rate limits, timeouts) from ones
that must surface immediately (missing credentials) and produces concise
summaries of verbose provider errors for logs.
"""
import re

import anthropic
import openai


class RAGError(Exception):
    """Base class for retrieval engine errors."""


class ConfigurationError(RAGError):
    """A required provider is not configured (e.g. missing credentials). Never retried."""


class TransientProviderError(RAGError):
    """A provider kept rate limiting or timing out after all retry attempts."""


class CorruptShardError(RAGError):
    """A persisted vector shard could not be read or parsed."""


class AssistCallError(RAGError):
    """A sub-query generation or sufficiency check call failed."""


class ErrorClassifier:
    """
    Classify provider exceptions.

    Decides whether an exception is worth retrying and turns verbose
    messages into short, log-friendly summaries.
    """

    TRANSIENT_TYPES = (
        TransientProviderError,
        TimeoutError,
        openai.RateLimitError,
        openai.APITimeoutError,
        anthropic.RateLimitError,
        anthropic.APITimeoutError,
    )

    # Error patterns and their simplified messages
    PATTERNS = [
        (r"insufficient.?quota|exceeded your current quota|quota exceeded", "Provider quota exhausted"),
        (r"\b429\b|too many requests", "Rate limit exceeded"),
        (r"rate.?limit|resource.?exhausted", "Provider rate limit reached"),
        (r"timed out|read timeout|deadline exceeded", "Request timeout"),
        (r"api key|unauthorized|\b401\b|authentication", "Missing or invalid credentials"),
        (r"connection.*(refused|reset)|failed to establish", "Network connection failed"),
    ]

    TRANSIENT_SUMMARIES = {
        "Rate limit exceeded",
        "Provider rate limit reached",
        "Request timeout",
    }

    # Hard quota exhaustion also arrives as a 429; it is never retried
    PERMANENT_SUMMARIES = {
        "Provider quota exhausted",
    }

    @classmethod
    def classify(cls, error) -> str:
        """
        Classify an error and return a concise summary.

        Args:
            error: Exception or raw error message

        Returns:
            Short summary of the error
        """
        message = str(error) if error is not None else ""
        if not message:
            return type(error).__name__ if isinstance(error, BaseException) else "Unknown error"

        normalized = " ".join(message.lower().split())
        for pattern, summary in cls.PATTERNS:
            if re.search(pattern, normalized, re.IGNORECASE):
                return summary

        first_line = next((line.strip() for line in message.splitlines() if line.strip()), message)
        if len(first_line) > 150:
            first_line = first_line[:147] + "..."
        return first_line

    @classmethod
    def is_transient(cls, error: BaseException) -> bool:
        """Return True for rate-limit and timeout errors."""
        if isinstance(error, ConfigurationError):
            return False
        if cls.classify(error) in cls.PERMANENT_SUMMARIES:
            return False
        if isinstance(error, cls.TRANSIENT_TYPES):
            return True
        status = getattr(error, "status_code", None)
        if status == 429:
            return True
        return cls.classify(error) in cls.TRANSIENT_SUMMARIES
