"""Exception types raised by the knowledge indexing and retrieval services."""

from __future__ import annotations


class KnowledgeBaseError(Exception):
    """Base class for knowledge base errors."""


class ConfigurationError(KnowledgeBaseError):
    """A required provider credential or endpoint is not configured."""


class ConcurrencyConflict(KnowledgeBaseError):
    """A sync cannot start right now for this organization and collection."""


class SyncCooldownError(ConcurrencyConflict):
    """The previous run finished too recently."""

    def __init__(self, wait_seconds: int):
        self.wait_seconds = wait_seconds
        super().__init__(f"Sync cooldown: please wait {wait_seconds} seconds before syncing again")


class PerRecordError(KnowledgeBaseError):
    """Indexing failed for a single source record; the run continues."""

    def __init__(self, record_id: str, reason: str):
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Record {record_id}: {reason}")


class RunFailure(KnowledgeBaseError):
    """A sync run aborted on an unexpected error."""


class ProviderError(KnowledgeBaseError):
    """The AI provider failed or returned a malformed response."""


class EmbeddingError(ProviderError):
    """The embedding provider failed or returned a malformed response."""


class CompletionError(ProviderError):
    """The chat completion request failed."""


class SourceError(KnowledgeBaseError):
    """The source system failed or returned a malformed response."""


class JobNotFoundError(KnowledgeBaseError):
    """No sync job exists with the requested id."""


class DocumentNotFoundError(KnowledgeBaseError):
    """No document with the requested id is registered for the organization."""
