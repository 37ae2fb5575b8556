"""ISS and net-amount computation for a service transaction.

Pure functions: no I/O, no clock, no state. All arithmetic is Decimal with
half-away-from-zero rounding (``ROUND_HALF_UP`` in the decimal module).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from emissor_abrasf.models.document import TaxBreakdown
from emissor_abrasf.models.transaction import (
    INFORMATIVE_FIELDS,
    MONETARY_FIELDS,
    WITHHOLDING_FIELDS,
    FiscalTransaction,
)
from emissor_abrasf.services.exceptions import InvalidTransaction
from emissor_abrasf.utils.validators import validate_xml_text

MONEY = Decimal("0.01")
RATE = Decimal("0.0001")
HUNDRED = Decimal("100")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY, rounding=ROUND_HALF_UP)


def round_rate(value: Decimal) -> Decimal:
    return value.quantize(RATE, rounding=ROUND_HALF_UP)


def validate_transaction(transaction: FiscalTransaction) -> None:
    """Check the transaction invariants, raising InvalidTransaction on the first violation."""
    gross = transaction.valor_servicos
    if gross < 0:
        raise InvalidTransaction("valor_servicos não pode ser negativo")
    for name in MONETARY_FIELDS:
        if name == "valor_servicos":
            continue
        value = getattr(transaction, name)
        if value < 0:
            raise InvalidTransaction(f"{name} não pode ser negativo")
        if value > gross:
            raise InvalidTransaction(f"{name} ({value}) excede valor_servicos ({gross})")
    if not transaction.discriminacao.strip():
        raise InvalidTransaction("discriminacao não pode ser vazia")
    if not transaction.recipient.cpf_cnpj or not transaction.recipient.razao_social:
        raise InvalidTransaction("Tomador sem identificação (CPF/CNPJ e razão social)")
    _check_xml_text(transaction)


def _check_xml_text(transaction: FiscalTransaction) -> None:
    texts = {
        "transaction_id": transaction.transaction_id,
        "discriminacao": transaction.discriminacao,
        "numero_processo": transaction.numero_processo,
    }
    for name, value in transaction.recipient.to_dict().items():
        texts[f"tomador.{name}"] = value
    for name, value in texts.items():
        if value is None:
            continue
        try:
            validate_xml_text(value, name)
        except ValueError as exc:
            raise InvalidTransaction(str(exc)) from None


def compute(transaction: FiscalTransaction, aliquota: Decimal) -> TaxBreakdown:
    """Compute the tax breakdown for *transaction* at *aliquota* percent.

    ``iss = round(base * aliquota / 100, 2)``; the net amount is the
    gross value minus ISS and the federal withholdings (PIS, COFINS, INSS,
    IR, CSLL). Other withholdings and the discounts are reported unchanged
    and do not affect the net. A zero rate is legal and yields ``valor_iss == 0``.
    """
    validate_transaction(transaction)
    if not aliquota.is_finite() or aliquota < 0 or aliquota > HUNDRED:
        raise InvalidTransaction(f"Alíquota inválida: {aliquota}")

    rate = round_rate(aliquota)
    gross = round_money(transaction.valor_servicos)
    deducoes = round_money(transaction.valor_deducoes)
    base = gross - deducoes
    iss = round_money(base * rate / HUNDRED)

    retencoes = {name: round_money(getattr(transaction, name)) for name in WITHHOLDING_FIELDS}
    informativos = {name: round_money(getattr(transaction, name)) for name in INFORMATIVE_FIELDS}

    liquido = gross - iss - sum(retencoes.values())
    if liquido < 0:
        raise InvalidTransaction(f"Valor líquido negativo ({liquido}): retenções excedem o valor")

    return TaxBreakdown(
        valor_servicos=gross,
        valor_deducoes=deducoes,
        base_calculo=base,
        aliquota=rate,
        valor_iss=iss,
        valor_iss_retido=iss if transaction.iss_retido else round_money(Decimal(0)),
        valor_liquido=liquido,
        **retencoes,
        **informativos,
    )
