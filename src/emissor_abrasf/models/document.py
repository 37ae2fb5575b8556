from __future__ import annotations

from dataclasses import dataclass, fields
from decimal import Decimal
from enum import Enum


class DocumentState(str, Enum):
    PROCESSING = "processing"
    ISSUED = "issued"
    ERROR = "error"
    CANCELLED = "cancelled"


# Legal lifecycle transitions; anything not listed is rejected by the store.
TRANSITIONS: dict[DocumentState, frozenset[DocumentState]] = {
    DocumentState.PROCESSING: frozenset({DocumentState.ISSUED, DocumentState.ERROR}),
    DocumentState.ISSUED: frozenset({DocumentState.CANCELLED}),
}

LIVE_STATES = frozenset({DocumentState.PROCESSING, DocumentState.ISSUED})


@dataclass(frozen=True)
class TaxBreakdown:
    """Computed tax amounts for one transaction. Money at 2 places, rate at 4."""

    valor_servicos: Decimal
    valor_deducoes: Decimal
    base_calculo: Decimal
    aliquota: Decimal
    valor_iss: Decimal
    valor_iss_retido: Decimal
    valor_pis: Decimal
    valor_cofins: Decimal
    valor_inss: Decimal
    valor_ir: Decimal
    valor_csll: Decimal
    outras_retencoes: Decimal
    desconto_incondicionado: Decimal
    desconto_condicionado: Decimal
    valor_liquido: Decimal

    def to_dict(self) -> dict[str, str]:
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, d: dict) -> TaxBreakdown:
        return cls(**{f.name: Decimal(d[f.name]) for f in fields(cls)})


@dataclass(frozen=True)
class FiscalDocument:
    """Persisted record of one issuance attempt.

    Instances are immutable; state transitions go through the document store,
    which returns a new instance.
    """

    id: str
    transaction_id: str
    issuer_scope: str
    numero_rps: int
    serie_rps: str
    tipo_rps: str
    breakdown: TaxBreakdown
    transacao: dict
    item_lista_servico: str
    codigo_tributacao_municipio: str
    codigo_cnae: str
    state: DocumentState
    created_at: str
    numero_nota: str | None = None
    codigo_verificacao: str | None = None
    link_nfse: str | None = None
    xml_envio: str | None = None
    xml_retorno: str | None = None
    motivo_cancelamento: str | None = None
    mensagem_erro: str | None = None
    issued_at: str | None = None
    cancelled_at: str | None = None

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def to_dict(self) -> dict:
        d = {f.name: getattr(self, f.name) for f in fields(self)}
        d["breakdown"] = self.breakdown.to_dict()
        d["state"] = self.state.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> FiscalDocument:
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in d.items() if k in known}
        data["breakdown"] = TaxBreakdown.from_dict(d["breakdown"])
        data["state"] = DocumentState(d["state"])
        return cls(**data)
