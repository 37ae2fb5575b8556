from __future__ import annotations

from dataclasses import dataclass, fields
from decimal import Decimal

from emissor_abrasf.services.exceptions import InvalidTransaction
from emissor_abrasf.utils.validators import (
    only_digits,
    parse_monetary,
    validate_cep,
    validate_cpf_cnpj,
    validate_uf,
)

ZERO = Decimal("0")

# Amounts that are subtracted from the gross value when computing the net.
WITHHOLDING_FIELDS = (
    "valor_pis",
    "valor_cofins",
    "valor_inss",
    "valor_ir",
    "valor_csll",
)
# Reported in Valores but not part of the net amount.
INFORMATIVE_FIELDS = ("outras_retencoes", "desconto_incondicionado", "desconto_condicionado")
MONETARY_FIELDS = ("valor_servicos", "valor_deducoes", *WITHHOLDING_FIELDS, *INFORMATIVE_FIELDS)


def _optional(d: dict, key: str) -> str | None:
    value = d.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclass(frozen=True)
class Recipient:
    """Service taker (tomador). Only the identity fields are required."""

    cpf_cnpj: str
    razao_social: str
    email: str | None = None
    telefone: str | None = None
    endereco: str | None = None
    numero: str | None = None
    complemento: str | None = None
    bairro: str | None = None
    cidade: str | None = None
    uf: str | None = None
    cep: str | None = None
    codigo_municipio: str | None = None

    @property
    def is_cpf(self) -> bool:
        return len(self.cpf_cnpj) == 11

    @property
    def has_address(self) -> bool:
        return any(
            (self.endereco, self.numero, self.complemento, self.bairro,
             self.codigo_municipio, self.uf, self.cep)
        )

    @classmethod
    def from_dict(cls, d: dict) -> Recipient:
        """Create a Recipient from a payload dict; blank optional fields become None."""
        telefone = _optional(d, "telefone")
        uf = _optional(d, "uf")
        cep = _optional(d, "cep")
        return cls(
            cpf_cnpj=validate_cpf_cnpj(str(d["cpf_cnpj"])),
            razao_social=str(d["razao_social"]).strip(),
            email=_optional(d, "email"),
            telefone=only_digits(telefone) if telefone else None,
            endereco=_optional(d, "endereco"),
            numero=_optional(d, "numero"),
            complemento=_optional(d, "complemento"),
            bairro=_optional(d, "bairro"),
            cidade=_optional(d, "cidade"),
            uf=validate_uf(uf) if uf else None,
            cep=validate_cep(cep) if cep else None,
            codigo_municipio=_optional(d, "codigo_municipio"),
        )

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name)}


@dataclass(frozen=True)
class FiscalTransaction:
    """A service transaction awaiting issuance."""

    transaction_id: str
    recipient: Recipient
    valor_servicos: Decimal
    discriminacao: str
    valor_deducoes: Decimal = ZERO
    valor_pis: Decimal = ZERO
    valor_cofins: Decimal = ZERO
    valor_inss: Decimal = ZERO
    valor_ir: Decimal = ZERO
    valor_csll: Decimal = ZERO
    outras_retencoes: Decimal = ZERO
    desconto_incondicionado: Decimal = ZERO
    desconto_condicionado: Decimal = ZERO
    iss_retido: bool = False
    numero_processo: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> FiscalTransaction:
        """Build a transaction from a YAML/JSON payload.

        Raises InvalidTransaction when a required key is missing or a value
        cannot be parsed. Range checks happen in the tax calculator.
        """
        try:
            amounts = {
                name: parse_monetary(d.get(name, 0), name)
                for name in MONETARY_FIELDS
                if name != "valor_servicos"
            }
            iss_retido = d.get("iss_retido", False)
            if not isinstance(iss_retido, bool):
                raise ValueError(f"iss_retido deve ser booleano: '{iss_retido}'")
            return cls(
                transaction_id=str(d["transaction_id"]),
                recipient=Recipient.from_dict(d["tomador"]),
                valor_servicos=parse_monetary(d["valor_servicos"], "valor_servicos"),
                discriminacao=str(d.get("discriminacao") or ""),
                iss_retido=iss_retido,
                numero_processo=_optional(d, "numero_processo"),
                **amounts,
            )
        except KeyError as exc:
            raise InvalidTransaction(f"Campo obrigatório ausente: {exc.args[0]}") from exc
        except (AttributeError, TypeError, ValueError) as exc:
            raise InvalidTransaction(str(exc)) from exc

    def to_dict(self) -> dict:
        """Serialize back to the payload shape accepted by from_dict."""
        d: dict = {
            "transaction_id": self.transaction_id,
            "tomador": self.recipient.to_dict(),
            "discriminacao": self.discriminacao,
            "iss_retido": self.iss_retido,
        }
        for name in MONETARY_FIELDS:
            d[name] = str(getattr(self, name))
        if self.numero_processo:
            d["numero_processo"] = self.numero_processo
        return d
