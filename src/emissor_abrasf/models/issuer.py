from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from emissor_abrasf.config import DEFAULT_CODIGO_MUNICIPIO, normalize_env
from emissor_abrasf.utils.validators import (
    validate_cnpj,
    validate_codigo_municipio,
    validate_percent,
)


@dataclass(frozen=True)
class IssuerProfile:
    """Issuer (prestador): the registration under which RPS numbers are allocated."""

    inscricao_municipal: str
    cnpj: str
    razao_social: str
    item_lista_servico: str
    codigo_tributacao_municipio: str
    codigo_cnae: str
    aliquota_iss: Decimal  # percent
    ambiente: str = "homologacao"
    certificado: str | None = None  # path to the .pfx signing credential
    codigo_municipio: str = DEFAULT_CODIGO_MUNICIPIO
    exigibilidade_iss: str = "1"
    serie_rps: str = "RPS"
    tipo_rps: str = "1"
    endpoint: str | None = None

    @property
    def scope(self) -> str:
        """Issuer scope: sequence numbers are unique within it."""
        return f"{self.ambiente}:{self.inscricao_municipal}"

    @classmethod
    def from_dict(cls, d: dict) -> IssuerProfile:
        """Create an IssuerProfile from a YAML-loaded dict, applying defaults."""
        return cls(
            inscricao_municipal=str(d["inscricao_municipal"]),
            cnpj=validate_cnpj(str(d["cnpj"])),
            razao_social=d["razao_social"],
            item_lista_servico=str(d["item_lista_servico"]),
            codigo_tributacao_municipio=str(d["codigo_tributacao_municipio"]),
            codigo_cnae=str(d["codigo_cnae"]),
            aliquota_iss=validate_percent(d.get("aliquota_iss", "5.00")),
            ambiente=normalize_env(d.get("ambiente", "homologacao")),
            certificado=d.get("certificado"),
            codigo_municipio=validate_codigo_municipio(
                str(d.get("codigo_municipio", DEFAULT_CODIGO_MUNICIPIO))
            ),
            exigibilidade_iss=str(d.get("exigibilidade_iss", "1")),
            serie_rps=str(d.get("serie_rps", "RPS")),
            tipo_rps=str(d.get("tipo_rps", "1")),
            endpoint=d.get("endpoint"),
        )
