"""Document store: every issuance attempt, keyed by document id.

Documents live in ``<data>/documents.json`` behind an exclusive file lock.
The lock also covers the idempotency check and the RPS allocation made in
``create_document``, so two concurrent attempts for the same transaction id
cannot both create a live document.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from emissor_abrasf import config as _config
from emissor_abrasf.models.document import (
    TRANSITIONS,
    DocumentState,
    FiscalDocument,
    TaxBreakdown,
)
from emissor_abrasf.models.issuer import IssuerProfile
from emissor_abrasf.models.transaction import FiscalTransaction
from emissor_abrasf.services.exceptions import (
    AlreadyIssuing,
    DocumentNotFound,
    DocumentStoreUnavailable,
    InvalidState,
)
from emissor_abrasf.utils.sequence import next_rps

logger = logging.getLogger(__name__)


def _registry_path() -> Path:
    return _config.get_data_dir() / "documents.json"


@contextmanager
def _locked() -> Iterator[None]:
    """Hold an exclusive file lock during registry read-modify-write."""
    rp = _registry_path()
    try:
        rp.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(rp.with_suffix(".lock"), timeout=_config.STORE_LOCK_TIMEOUT)
        lock.acquire()
    except Timeout as exc:
        raise DocumentStoreUnavailable(f"Base de documentos bloqueada: {exc}") from exc
    except OSError as exc:
        raise DocumentStoreUnavailable(f"Base de documentos indisponível: {exc}") from exc
    try:
        yield
    finally:
        lock.release()


def _load() -> list[dict[str, Any]]:
    rp = _registry_path()
    try:
        if not rp.exists():
            return []
        entries = json.loads(rp.read_text())
    except (OSError, ValueError) as exc:
        raise DocumentStoreUnavailable(f"Base de documentos ilegível: {exc}") from exc
    if not isinstance(entries, list):
        raise DocumentStoreUnavailable(f"Formato inesperado em {rp}")
    return entries


def _save(entries: list[dict[str, Any]]) -> None:
    rp = _registry_path()
    tmp = rp.with_suffix(".tmp")
    try:
        tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False) + "\n")
        os.replace(tmp, rp)
    except OSError as exc:
        raise DocumentStoreUnavailable(f"Falha ao gravar documentos: {exc}") from exc


def _find_live(entries: list[dict[str, Any]], transaction_id: str) -> dict[str, Any] | None:
    live = {s.value for s in (DocumentState.PROCESSING, DocumentState.ISSUED)}
    return next(
        (e for e in entries if e["transaction_id"] == transaction_id and e["state"] in live),
        None,
    )


def _index_of(entries: list[dict[str, Any]], document_id: str) -> int:
    for i, e in enumerate(entries):
        if e["id"] == document_id:
            return i
    raise DocumentNotFound(document_id)


def create_document(
    transaction: FiscalTransaction,
    issuer: IssuerProfile,
    breakdown: TaxBreakdown,
    *,
    created_at: str,
) -> FiscalDocument:
    """Allocate an RPS number and persist a new document in ``processing``.

    Raises AlreadyIssuing if the transaction already has a live document,
    AllocationUnavailable if the counter cannot be reached (nothing is
    written), and DocumentStoreUnavailable if the store itself fails. A
    failure after allocation leaves an unused number, never a duplicate.
    """
    with _locked():
        entries = _load()
        live = _find_live(entries, transaction.transaction_id)
        if live is not None:
            raise AlreadyIssuing(transaction.transaction_id, live["id"])

        numero_rps = next_rps(issuer.scope)
        document = FiscalDocument(
            id=uuid.uuid4().hex,
            transaction_id=transaction.transaction_id,
            issuer_scope=issuer.scope,
            numero_rps=numero_rps,
            serie_rps=issuer.serie_rps,
            tipo_rps=issuer.tipo_rps,
            breakdown=breakdown,
            transacao=transaction.to_dict(),
            item_lista_servico=issuer.item_lista_servico,
            codigo_tributacao_municipio=issuer.codigo_tributacao_municipio,
            codigo_cnae=issuer.codigo_cnae,
            state=DocumentState.PROCESSING,
            created_at=created_at,
        )
        entries.append(document.to_dict())
        _save(entries)

    logger.info(
        "Documento %s criado: RPS %d (%s), transação %s",
        document.id,
        numero_rps,
        issuer.scope,
        transaction.transaction_id,
    )
    return document


def update_document(
    document_id: str,
    state: DocumentState | None = None,
    **changes: Any,
) -> FiscalDocument:
    """Apply *changes* to a document, optionally moving it to *state*.

    The transition is checked against the current stored state inside the
    lock (compare-and-set); illegal transitions raise InvalidState. Updates
    without a state change are only allowed while ``processing``.
    """
    with _locked():
        entries = _load()
        idx = _index_of(entries, document_id)
        current = FiscalDocument.from_dict(entries[idx])

        if state is not None:
            state = DocumentState(state)
            if state not in TRANSITIONS.get(current.state, frozenset()):
                raise InvalidState(
                    f"Transição inválida: {current.state.value} -> {state.value}",
                    state=current.state.value,
                )
            changes["state"] = state
        elif current.state is not DocumentState.PROCESSING:
            raise InvalidState(
                f"Documento em estado {current.state.value} não pode ser alterado",
                state=current.state.value,
            )

        updated = replace(current, **changes)
        entries[idx] = updated.to_dict()
        _save(entries)

    if state is not None:
        logger.info(
            "Documento %s: %s -> %s", document_id, current.state.value, updated.state.value
        )
    return updated


def get_document(document_id: str) -> FiscalDocument:
    """Return the document with *document_id*, or raise DocumentNotFound."""
    with _locked():
        entries = _load()
    return FiscalDocument.from_dict(entries[_index_of(entries, document_id)])


def find_live_document(transaction_id: str) -> FiscalDocument | None:
    """Return the processing/issued document of a transaction, if any."""
    with _locked():
        entries = _load()
    live = _find_live(entries, transaction_id)
    return FiscalDocument.from_dict(live) if live is not None else None


def list_documents(
    *,
    issuer_scope: str | None = None,
    transaction_id: str | None = None,
    state: DocumentState | str | None = None,
) -> list[FiscalDocument]:
    """Return documents in creation order, optionally filtered."""
    with _locked():
        entries = _load()
    if issuer_scope is not None:
        entries = [e for e in entries if e["issuer_scope"] == issuer_scope]
    if transaction_id is not None:
        entries = [e for e in entries if e["transaction_id"] == transaction_id]
    if state is not None:
        wanted = DocumentState(state).value
        entries = [e for e in entries if e["state"] == wanted]
    return [FiscalDocument.from_dict(e) for e in entries]


# --- Health check (read-only, no locks) ---


@dataclass
class StoreHealth:
    documents_ok: bool
    document_count: int
    processing_count: int = 0
    sequence_ok: bool = True


def check_store_health() -> StoreHealth:
    """Probe the document and counter files for corruption (read-only)."""
    rp = _registry_path()
    sp = _config.get_data_dir() / "sequence.json"

    documents_ok = True
    count = 0
    processing = 0
    if rp.exists():
        try:
            entries = json.loads(rp.read_text())
            count = len(entries)
            processing = sum(1 for e in entries if e.get("state") == "processing")
        except (json.JSONDecodeError, ValueError, TypeError, AttributeError):
            documents_ok = False

    sequence_ok = True
    if sp.exists():
        try:
            json.loads(sp.read_text())
        except (json.JSONDecodeError, ValueError):
            sequence_ok = False

    return StoreHealth(
        documents_ok=documents_ok,
        document_count=count,
        processing_count=processing,
        sequence_ok=sequence_ok,
    )
