"""Application-level exception types for Sanctuary."""

from __future__ import annotations


class SanctuaryError(Exception):
    """Base exception for Sanctuary."""


class ConfigurationError(SanctuaryError):
    """Base exception for configuration and startup validation errors."""


class RequiredToolMissingError(ConfigurationError):
    """Raised when a toolset does not register a handler for every declared tool."""


class EncryptionKeyError(ConfigurationError):
    """Raised when the content encryption key is missing or malformed."""


class TransportError(SanctuaryError):
    """Raised when the model provider is unreachable or its stream fails mid-flight."""


class StreamProtocolError(TransportError):
    """Raised when a delta stream violates the fragment contract."""


class TurnSealedError(SanctuaryError):
    """Raised when a sealed conversation turn is mutated."""


class TelemetryError(SanctuaryError):
    """Raised when turn telemetry is flushed more than once."""


class PlanDecisionError(SanctuaryError):
    """Raised when a plan decision cannot be bound to exactly one pending proposal."""


class DecryptionError(SanctuaryError):
    """Raised when stored content cannot be authenticated or decrypted."""


class RateLimitExceededError(SanctuaryError):
    """Raised when a user starts turns faster than the configured limit."""

    def __init__(self, identifier: str, retry_after: int) -> None:
        super().__init__(f"rate limit exceeded for {identifier}, retry after {retry_after}s")
        self.identifier = identifier
        self.retry_after = retry_after
