"""Read journal exceptions."""

from __future__ import annotations


class ReadJournalError(Exception):
    """Root exception for the read journal."""


class MongoConnectionError(ReadJournalError):
    """Raised when connection to MongoDB fails."""


class MongoQueryError(ReadJournalError):
    """Raised when a point lookup or a range deletion fails."""


class MalformedDocumentError(ReadJournalError):
    """Raised when a stored document lacks an expected field or has the wrong shape.

    Streams never retry on this error: restarting cannot repair bad data.
    """

    def __init__(self, collection: str, field: str, document: object) -> None:
        self.collection = collection
        self.field = field
        self.document = document
        super().__init__(
            f"Malformed document in {collection!r}: field {field!r} "
            f"missing or of unexpected type in {document!r}"
        )


class ReadJournalConfigurationError(ReadJournalError):
    """Raised at construction time when the configuration is ambiguous or incomplete."""


class IndexCreationError(ReadJournalError):
    """Raised when a required index cannot be created."""


class TimestampLedgerError(ReadJournalError):
    """Raised when the capped timestamp collection cannot be created."""
