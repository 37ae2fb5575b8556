from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from emissor_abrasf.config import BRT
from emissor_abrasf.models.document import DocumentState, FiscalDocument
from emissor_abrasf.services.exceptions import InvalidReason, InvalidState
from emissor_abrasf.utils.registry import get_document, update_document

logger = logging.getLogger(__name__)

MIN_REASON_LENGTH = 15
MAX_REASON_LENGTH = 255


def validate_reason(reason: str) -> str:
    """Return the stripped reason, or raise InvalidReason if its length is out of range."""
    text = (reason or "").strip()
    if len(text) < MIN_REASON_LENGTH:
        raise InvalidReason(
            f"O motivo deve ter pelo menos {MIN_REASON_LENGTH} caracteres ({len(text)})"
        )
    if len(text) > MAX_REASON_LENGTH:
        raise InvalidReason(
            f"O motivo deve ter no máximo {MAX_REASON_LENGTH} caracteres ({len(text)})"
        )
    return text


def cancel(
    document_id: str,
    reason: str,
    *,
    at_authority: Callable[[FiscalDocument, str], object] | None = None,
) -> FiscalDocument:
    """Cancel an issued document.

    *at_authority*, when given, is called with the document and the reason
    before the cancellation is persisted; if it raises, nothing changes.
    """
    motivo = validate_reason(reason)

    document = get_document(document_id)
    if document.state is not DocumentState.ISSUED:
        raise InvalidState(
            f"Somente NFS-e emitidas podem ser canceladas (estado: {document.state.value})",
            state=document.state.value,
        )

    if at_authority is not None:
        at_authority(document, motivo)

    # update_document re-checks the state under the lock
    cancelled = update_document(
        document.id,
        DocumentState.CANCELLED,
        motivo_cancelamento=motivo,
        cancelled_at=datetime.now(BRT).replace(microsecond=0).isoformat(),
    )
    logger.info("Documento %s cancelado", document.id)
    return cancelled
