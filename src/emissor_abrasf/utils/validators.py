from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

_UFS = frozenset({
    "AC", "AL", "AM", "AP", "BA", "CE", "DF", "ES", "GO",
    "MA", "MG", "MS", "MT", "PA", "PB", "PE", "PI", "PR",
    "RJ", "RN", "RO", "RR", "RS", "SC", "SE", "SP", "TO",
})


def only_digits(value: str) -> str:
    return re.sub(r"\D", "", value)


def parse_monetary(value: object, field_name: str = "valor") -> Decimal:
    """Parse a monetary value (str, int, float or Decimal) into a Decimal.

    Floats go through ``str()`` so 0.1 stays 0.1. Raises ValueError for
    non-numeric, NaN or infinite values. Sign is not checked here.
    """
    if isinstance(value, bool):
        raise ValueError(f"{field_name}: valor numerico invalido: '{value}'")
    try:
        d = Decimal(str(value).strip())
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValueError(f"{field_name}: valor numerico invalido: '{value}'") from None
    return d


def validate_percent(value: object) -> Decimal:
    """Validate a percentage value (0-100), returning it as a Decimal."""
    try:
        d = Decimal(str(value).strip())
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValueError(f"Percentual invalido: '{value}'") from None
    if d < 0 or d > 100:
        raise ValueError("Percentual deve estar entre 0 e 100")
    return d


def validate_cpf_cnpj(value: str) -> str:
    """Strip punctuation and require 11 (CPF) or 14 (CNPJ) digits."""
    digits = only_digits(value)
    if len(digits) not in (11, 14):
        raise ValueError("CPF/CNPJ: deve ter 11 ou 14 digitos")
    return digits


def validate_cnpj(value: str) -> str:
    digits = only_digits(value)
    if len(digits) != 14:
        raise ValueError("CNPJ: deve ter 14 digitos")
    return digits


def validate_cep(value: str) -> str:
    digits = only_digits(value)
    if len(digits) != 8:
        raise ValueError("CEP: deve ter 8 digitos")
    return digits


def validate_uf(value: str) -> str:
    uf = value.strip().upper()
    if uf not in _UFS:
        raise ValueError(f"UF invalida: '{value}'")
    return uf


def validate_codigo_municipio(value: str) -> str:
    """Validate an IBGE municipality code: exactly 7 numeric digits."""
    if not re.fullmatch(r"\d{7}", value):
        raise ValueError("Codigo do municipio: deve ter 7 digitos numericos")
    return value


# Characters outside the XML 1.0 Char production.
_XML_INVALID = re.compile("[^\t\n\r\u0020-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")


def validate_xml_text(value: str, field_name: str = "texto") -> str:
    """Reject text that cannot be written into an XML 1.0 document."""
    match = _XML_INVALID.search(value)
    if match:
        raise ValueError(f"{field_name}: caractere invalido para XML ({ord(match.group()):#06x})")
    return value
