"""
Custom exceptions for conversation storage.

Only a handful of these ever reach callers (unknown conversations, invalid
input, and a transcript write that failed after its retry). The rest name
failure modes that components catch and turn into a degraded behavior.
"""


class ConversationStorageError(Exception):
    """Base exception for all conversation storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConversationNotFoundError(ConversationStorageError):
    """Raised when a conversation does not exist."""

    def __init__(self, conversation_id: str):
        super().__init__(
            f"Conversation not found: {conversation_id}",
            {"conversation_id": conversation_id},
        )
        self.conversation_id = conversation_id


class ValidationError(ConversationStorageError):
    """Raised when data validation fails."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class StorageIOError(ConversationStorageError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class WriteFailure(StorageIOError):
    """Raised when a transcript append failed twice.

    When ``buffered`` is True the line is held in memory and written ahead
    of the next append to the same conversation.
    """

    def __init__(
        self,
        conversation_id: str,
        path: str | None = None,
        cause: Exception | None = None,
        buffered: bool = True,
    ):
        super().__init__("append_transcript", path, cause)
        self.details["conversation_id"] = conversation_id
        self.details["buffered"] = buffered
        self.conversation_id = conversation_id
        self.buffered = buffered


class StorageConnectionError(ConversationStorageError):
    """Raised when the index database cannot be opened.

    Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class CorruptLineError(ConversationStorageError):
    """Raised when a transcript line cannot be parsed into a known shape."""

    def __init__(self, reason: str, line_number: int | None = None):
        details: dict = {"reason": reason}
        if line_number is not None:
            details["line_number"] = line_number
        super().__init__(f"Corrupt transcript line: {reason}", details)
        self.reason = reason
        self.line_number = line_number


class IndexDriftError(ConversationStorageError):
    """Keyword index rows are missing for turns present in the transcript."""

    def __init__(self, conversation_id: str, missing: int):
        super().__init__(
            f"Keyword index for {conversation_id} is missing {missing} row(s)",
            {"conversation_id": conversation_id, "missing": missing},
        )
        self.conversation_id = conversation_id
        self.missing = missing


class SummarizationError(ConversationStorageError):
    """Raised when the summarizer fails or returns nothing usable."""

    def __init__(self, conversation_id: str, cause: Exception | None = None):
        details = {"conversation_id": conversation_id}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Summarization failed for {conversation_id}", details)
        self.conversation_id = conversation_id
        self.cause = cause


class EmbeddingError(ConversationStorageError):
    """Raised when the embedder fails for an abbreviation."""

    def __init__(self, conversation_id: str, cause: Exception | None = None):
        details = {"conversation_id": conversation_id}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Embedding failed for {conversation_id}", details)
        self.conversation_id = conversation_id
        self.cause = cause


class BackendUnavailableError(ConversationStorageError):
    """Raised when an optional search backend (FTS5, vectors) is unusable."""

    def __init__(self, backend: str, reason: str):
        super().__init__(
            f"Search backend unavailable: {backend} ({reason})",
            {"backend": backend, "reason": reason},
        )
        self.backend = backend
        self.reason = reason
