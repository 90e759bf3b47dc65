from __future__ import annotations


class ChatRagError(RuntimeError):
    pass


class ParseError(ChatRagError):
    pass


class EmptyDocumentError(ChatRagError):
    pass


class EmptyStoreError(ChatRagError):
    pass


class ConfigError(ChatRagError, ValueError):
    pass


class DimensionMismatchError(ChatRagError, ValueError):
    def __init__(self, *, expected: int, actual: int, context: str = "vector") -> None:
        super().__init__(f"{context} dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class DuplicateChunkError(ChatRagError):
    pass


class CorruptStoreError(ChatRagError):
    pass


class StoreNotFoundError(ChatRagError, FileNotFoundError):
    pass


class EmbeddingError(ChatRagError):
    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class GenerationError(ChatRagError):
    pass


class IngestionError(ChatRagError):
    pass


class OperationCancelledError(ChatRagError):
    pass
