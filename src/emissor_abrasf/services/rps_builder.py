from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from lxml import etree

from emissor_abrasf.config import ABRASF_NS
from emissor_abrasf.models.document import TaxBreakdown
from emissor_abrasf.models.issuer import IssuerProfile
from emissor_abrasf.models.transaction import FiscalTransaction, Recipient
from emissor_abrasf.utils.rps_id import generate_rps_id

NSMAP = {None: ABRASF_NS}


def _money(value: Decimal) -> str:
    return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _rate(value: Decimal) -> str:
    return str(value.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP))


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, tag)
    if text is not None:
        el.text = text
    return el


def _sub_optional(parent: etree._Element, tag: str, text: str | None) -> None:
    if text:
        _sub(parent, tag, text)


def _build_valores(servico: etree._Element, b: TaxBreakdown, iss_retido: bool) -> None:
    valores = _sub(servico, "Valores")
    _sub(valores, "ValorServicos", _money(b.valor_servicos))
    _sub(valores, "ValorDeducoes", _money(b.valor_deducoes))
    _sub(valores, "ValorPis", _money(b.valor_pis))
    _sub(valores, "ValorCofins", _money(b.valor_cofins))
    _sub(valores, "ValorInss", _money(b.valor_inss))
    _sub(valores, "ValorIr", _money(b.valor_ir))
    _sub(valores, "ValorCsll", _money(b.valor_csll))
    _sub(valores, "OutrasRetencoes", _money(b.outras_retencoes))
    _sub(valores, "IssRetido", "1" if iss_retido else "2")
    _sub(valores, "ValorIss", _money(b.valor_iss))
    _sub(valores, "ValorIssRetido", _money(b.valor_iss_retido))
    _sub(valores, "BaseCalculo", _money(b.base_calculo))
    _sub(valores, "Aliquota", _rate(b.aliquota))
    _sub(valores, "ValorLiquidoNfse", _money(b.valor_liquido))
    _sub(valores, "DescontoIncondicionado", _money(b.desconto_incondicionado))
    _sub(valores, "DescontoCondicionado", _money(b.desconto_condicionado))


def _build_tomador(inf: etree._Element, recipient: Recipient) -> None:
    tomador = _sub(inf, "Tomador")
    ident = _sub(tomador, "IdentificacaoTomador")
    cpf_cnpj = _sub(ident, "CpfCnpj")
    _sub(cpf_cnpj, "Cpf" if recipient.is_cpf else "Cnpj", recipient.cpf_cnpj)
    _sub(tomador, "RazaoSocial", recipient.razao_social)

    # Endereco and Contato are omitted entirely when there is nothing to put in them
    if recipient.has_address:
        end = _sub(tomador, "Endereco")
        _sub_optional(end, "Endereco", recipient.endereco)
        _sub_optional(end, "Numero", recipient.numero)
        _sub_optional(end, "Complemento", recipient.complemento)
        _sub_optional(end, "Bairro", recipient.bairro)
        _sub_optional(end, "CodigoMunicipio", recipient.codigo_municipio)
        _sub_optional(end, "Uf", recipient.uf)
        _sub_optional(end, "Cep", recipient.cep)

    if recipient.telefone or recipient.email:
        contato = _sub(tomador, "Contato")
        _sub_optional(contato, "Telefone", recipient.telefone)
        _sub_optional(contato, "Email", recipient.email)


def build_rps(
    transaction: FiscalTransaction,
    breakdown: TaxBreakdown,
    issuer: IssuerProfile,
    numero_rps: int,
    data_emissao: datetime,
) -> etree._Element:
    """Build the GerarNfseEnvio envelope for one RPS.

    Returns the root element with the ABRASF default namespace. The output
    depends only on the arguments, so equal inputs serialize to equal bytes.
    """
    root = etree.Element("GerarNfseEnvio", nsmap=NSMAP)  # type: ignore[arg-type]  # lxml stubs don't model None key for default ns
    rps = _sub(root, "Rps")
    inf = _sub(rps, "InfDeclaracaoPrestacaoServico")
    inf.set("Id", generate_rps_id(issuer.cnpj, issuer.serie_rps, numero_rps))

    # identificação
    inner = _sub(inf, "Rps")
    ident = _sub(inner, "IdentificacaoRps")
    _sub(ident, "Numero", str(numero_rps))
    _sub(ident, "Serie", issuer.serie_rps)
    _sub(ident, "Tipo", issuer.tipo_rps)
    _sub(inner, "DataEmissao", data_emissao.strftime("%Y-%m-%dT%H:%M:%S"))
    _sub(inner, "Status", "1")
    _sub(inf, "Competencia", data_emissao.date().isoformat())

    # serviço
    servico = _sub(inf, "Servico")
    _build_valores(servico, breakdown, transaction.iss_retido)
    if transaction.iss_retido:
        _sub(servico, "ResponsavelRetencao", "1")
    _sub(servico, "ItemListaServico", issuer.item_lista_servico)
    _sub(servico, "CodigoCnae", issuer.codigo_cnae)
    _sub(servico, "CodigoTributacaoMunicipio", issuer.codigo_tributacao_municipio)
    _sub(servico, "Discriminacao", transaction.discriminacao)
    _sub(servico, "CodigoMunicipio", issuer.codigo_municipio)
    _sub(servico, "ExigibilidadeISS", issuer.exigibilidade_iss)
    _sub_optional(servico, "NumeroProcesso", transaction.numero_processo)

    # prestador
    prestador = _sub(inf, "Prestador")
    p_cpf_cnpj = _sub(prestador, "CpfCnpj")
    _sub(p_cpf_cnpj, "Cnpj", issuer.cnpj)
    _sub(prestador, "InscricaoMunicipal", issuer.inscricao_municipal)

    # tomador
    _build_tomador(inf, transaction.recipient)

    return root
