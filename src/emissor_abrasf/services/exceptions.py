from __future__ import annotations


class EmissorError(Exception):
    """Base class for every error raised by the issuance pipeline."""


class InvalidTransaction(EmissorError, ValueError):
    """The transaction violates a data invariant. Raised before any allocation."""


class AllocationUnavailable(EmissorError):
    """The RPS counter store could not be reached; no document was created."""


class DocumentStoreUnavailable(EmissorError):
    """The document store could not be read or written."""


class AlreadyIssuing(EmissorError):
    """The transaction already has a live (processing or issued) document."""

    def __init__(self, transaction_id: str, document_id: str) -> None:
        super().__init__(
            f"Transação {transaction_id} já possui documento ativo: {document_id}"
        )
        self.transaction_id = transaction_id
        self.document_id = document_id


class DocumentNotFound(EmissorError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Documento não encontrado: {document_id}")
        self.document_id = document_id


class InvalidState(EmissorError):
    """The requested transition is not legal from the document's current state."""

    def __init__(self, message: str, state: str | None = None) -> None:
        super().__init__(message)
        self.state = state


class InvalidReason(EmissorError, ValueError):
    """A cancellation or abandonment reason is missing or out of bounds."""
