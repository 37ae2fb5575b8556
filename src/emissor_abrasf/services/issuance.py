"""Issuance lifecycle: processing -> issued | error.

``issue`` validates and computes before anything is allocated, then creates
the document and runs the rest of the pipeline against it. From that point
on every failure is recorded on the document instead of raised, so each
burned RPS number has a retrievable record.

A document left in ``processing`` by a process that died mid-submission
is moved to ``error`` by an operator through ``abandon``.
"""

from __future__ import annotations

import logging
from datetime import datetime

from emissor_abrasf.config import BRT, SUBMIT_TIMEOUT, load_credential
from emissor_abrasf.models.document import DocumentState, FiscalDocument
from emissor_abrasf.models.issuer import IssuerProfile
from emissor_abrasf.models.transaction import FiscalTransaction
from emissor_abrasf.services.exceptions import InvalidReason, InvalidState
from emissor_abrasf.services.gateway import (
    Accepted,
    Rejected,
    SubmissionResult,
    Unreachable,
    submit_envelope,
)
from emissor_abrasf.services.rps_builder import build_rps
from emissor_abrasf.services.tax import compute
from emissor_abrasf.services.xml_encoder import serialize_envelope
from emissor_abrasf.utils.registry import create_document, get_document, update_document

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


def _now_brt() -> datetime:
    return datetime.now(BRT).replace(microsecond=0)


def _mark_error(
    document: FiscalDocument,
    message: str,
    xml_retorno: str | None = None,
) -> FiscalDocument:
    logger.warning("Documento %s (RPS %d) em erro: %s", document.id, document.numero_rps, message)
    changes: dict[str, str] = {"mensagem_erro": message[:MAX_ERROR_LENGTH]}
    if xml_retorno is not None:
        changes["xml_retorno"] = xml_retorno
    return update_document(document.id, DocumentState.ERROR, **changes)


def _apply_result(document: FiscalDocument, result: SubmissionResult) -> FiscalDocument:
    if isinstance(result, Accepted):
        issued = update_document(
            document.id,
            DocumentState.ISSUED,
            numero_nota=result.numero_nota,
            codigo_verificacao=result.codigo_verificacao,
            link_nfse=result.link_nfse,
            xml_retorno=result.raw,
            issued_at=_now_brt().isoformat(),
        )
        logger.info("NFS-e %s emitida (RPS %d)", result.numero_nota, document.numero_rps)
        return issued
    if isinstance(result, Rejected):
        return _mark_error(document, f"Rejeitada pela prefeitura: {result.reason}", result.raw)
    if isinstance(result, Unreachable):
        return _mark_error(document, f"Prefeitura indisponível: {result.reason}", result.raw)
    raise TypeError(f"Resultado de envio desconhecido: {result!r}")


def issue(transaction: FiscalTransaction, issuer: IssuerProfile) -> FiscalDocument:
    """Issue *transaction* under *issuer* and return the resulting document.

    Raises InvalidTransaction (nothing allocated), AlreadyIssuing,
    AllocationUnavailable or DocumentStoreUnavailable. Every other failure
    is returned as a document in ``error`` state.
    """
    breakdown = compute(transaction, issuer.aliquota_iss)

    emitted_at = _now_brt()
    document = create_document(
        transaction, issuer, breakdown, created_at=emitted_at.isoformat()
    )

    try:
        envelope = build_rps(transaction, breakdown, issuer, document.numero_rps, emitted_at)
        xml_envio = serialize_envelope(envelope)
        document = update_document(document.id, xml_envio=xml_envio.decode("utf-8"))
        credential = load_credential(issuer)
        result = submit_envelope(xml_envio, credential, issuer.ambiente, issuer.endpoint)
    except Exception as exc:
        logger.warning("Falha na emissão do documento %s", document.id, exc_info=True)
        return _mark_error(document, f"Falha na emissão: {type(exc).__name__}: {exc}")

    return _apply_result(document, result)


def retry(document_id: str, issuer: IssuerProfile) -> FiscalDocument:
    """Re-run issuance for a document in ``error`` under a new RPS number.

    The failed document keeps its (burned) number; a new document is created.
    """
    failed = get_document(document_id)
    if failed.state is not DocumentState.ERROR:
        raise InvalidState(
            f"Somente documentos em erro podem ser reemitidos (estado: {failed.state.value})",
            state=failed.state.value,
        )
    if failed.issuer_scope != issuer.scope:
        raise InvalidState(
            f"Documento pertence a {failed.issuer_scope}, não a {issuer.scope}",
            state=failed.state.value,
        )
    transaction = FiscalTransaction.from_dict(failed.transacao)
    logger.info("Reemitindo transação %s (documento anterior %s)", failed.transaction_id, failed.id)
    return issue(transaction, issuer)


def abandon(document_id: str, reason: str, *, min_age: int = SUBMIT_TIMEOUT) -> FiscalDocument:
    """Move a document stuck in ``processing`` to ``error``.

    Only documents created more than *min_age* seconds ago qualify, so a
    submission still waiting on the authority is never cut short. The RPS
    number stays burned and the transaction can be issued again.

    If the authority did accept the RPS, the note exists there without a
    local record; check the authority portal before reissuing.
    """
    reason = reason.strip()
    if not reason:
        raise InvalidReason("Informe o motivo do abandono")

    doc = get_document(document_id)
    if doc.state is not DocumentState.PROCESSING:
        raise InvalidState(
            "Somente documentos em processamento podem ser abandonados"
            f" (estado: {doc.state.value})",
            state=doc.state.value,
        )
    age = (_now_brt() - datetime.fromisoformat(doc.created_at)).total_seconds()
    if age < min_age:
        raise InvalidState(
            f"Documento em processamento há {int(age)}s; aguarde {min_age}s antes de abandonar",
            state=doc.state.value,
        )
    return _mark_error(doc, f"Abandonado pelo operador: {reason}")
