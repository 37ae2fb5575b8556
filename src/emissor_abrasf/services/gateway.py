from __future__ import annotations

import logging
from dataclasses import dataclass

import requests.exceptions
from lxml import etree
from requests_pkcs12 import get, post

from emissor_abrasf.config import (
    DOCUMENT_URL_TEMPLATES,
    ENDPOINTS,
    SUBMIT_TIMEOUT,
    Credential,
)

logger = logging.getLogger(__name__)

_HEADERS = {"Content-Type": "text/xml; charset=utf-8"}

# Authority responses are untrusted input.
_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


@dataclass(frozen=True)
class Accepted:
    numero_nota: str
    codigo_verificacao: str
    link_nfse: str
    raw: str


@dataclass(frozen=True)
class Rejected:
    """The authority refused the document content. Not retry-eligible as is."""

    reason: str
    raw: str


@dataclass(frozen=True)
class Unreachable:
    """No definitive answer from the authority. Retry-eligible with a new RPS."""

    reason: str
    raw: str | None = None


SubmissionResult = Accepted | Rejected | Unreachable


def _local(tag: str) -> str:
    return f"*[local-name()='{tag}']"


def _first_text(node: etree._Element, xpath: str) -> str | None:
    found = node.xpath(xpath)
    if not found:
        return None
    text = found[0].text
    return text.strip() if text and text.strip() else None


def _format_mensagens(mensagens: list[etree._Element]) -> str:
    """Format MensagemRetorno elements as a human-readable string."""
    parts = []
    for m in mensagens:
        codigo = _first_text(m, _local("Codigo"))
        texto = _first_text(m, _local("Mensagem")) or "sem mensagem"
        correcao = _first_text(m, _local("Correcao"))
        part = f"{codigo} - {texto}" if codigo else texto
        if correcao:
            part += f" ({correcao})"
        parts.append(part)
    return "; ".join(parts)


def parse_response(body: bytes, env: str) -> SubmissionResult:
    """Classify an authority acknowledgment.

    A structured rejection (``MensagemRetorno``) is Rejected; an ``InfNfse``
    with number and verification code is Accepted; anything else, including
    XML that does not parse, is Unreachable.
    """
    raw = body.decode("utf-8", errors="replace")
    try:
        root = etree.fromstring(body, parser=_PARSER)
    except etree.XMLSyntaxError as exc:
        return Unreachable(f"Resposta malformada: {exc}", raw=raw)

    mensagens = root.xpath(f"//{_local('MensagemRetorno')}")
    if mensagens:
        return Rejected(_format_mensagens(mensagens), raw=raw)

    inf = root.xpath(f"//{_local('InfNfse')}")
    if not inf:
        return Unreachable("Resposta sem InfNfse nem MensagemRetorno", raw=raw)

    numero = _first_text(inf[0], _local("Numero"))
    codigo = _first_text(inf[0], _local("CodigoVerificacao"))
    if not numero or not codigo:
        return Unreachable("Resposta sem Numero/CodigoVerificacao", raw=raw)

    link = (
        _first_text(inf[0], _local("LinkNfse"))
        or _first_text(inf[0], _local("UrlNfse"))
        or DOCUMENT_URL_TEMPLATES[env].format(numero=numero)
    )
    return Accepted(numero_nota=numero, codigo_verificacao=codigo, link_nfse=link, raw=raw)


def submit_envelope(
    envelope: bytes,
    credential: Credential,
    env: str = "homologacao",
    endpoint: str | None = None,
    timeout: float = SUBMIT_TIMEOUT,
) -> SubmissionResult:
    """POST the RPS envelope to the authority and classify the outcome.

    Uses mTLS with the issuer's .pfx certificate. Makes exactly one attempt;
    transport errors, timeouts and non-2xx responses are Unreachable,
    unless a non-2xx body carries a structured rejection.
    """
    url = endpoint or ENDPOINTS[env]
    try:
        resp = post(
            url,
            data=envelope,
            headers=_HEADERS,
            pkcs12_filename=credential.pfx_path,
            pkcs12_password=credential.password,
            timeout=timeout,
        )
    except requests.exceptions.Timeout as exc:
        logger.warning("Timeout ao enviar RPS para %s", url)
        return Unreachable(f"Tempo esgotado ({timeout}s): {exc}")
    except requests.exceptions.RequestException as exc:
        logger.warning("Falha de comunicação com %s: %s", url, type(exc).__name__)
        return Unreachable(f"Falha de comunicação: {exc}")

    if not 200 <= resp.status_code < 300:
        # A structured refusal keeps its meaning whatever the status code.
        refused = parse_response(resp.content, env) if resp.content else None
        if isinstance(refused, Rejected):
            logger.info("Prefeitura recusou o RPS (HTTP %d)", resp.status_code)
            return refused
        body = resp.text[:500] if resp.text else ""
        return Unreachable(f"Erro HTTP ({resp.status_code}): {body}", raw=resp.text or None)

    result = parse_response(resp.content, env)
    logger.info("Resposta da prefeitura: %s", type(result).__name__)
    return result


def check_connectivity(
    credential: Credential,
    env: str = "homologacao",
    endpoint: str | None = None,
) -> None:
    """Test authority connectivity via mTLS GET to the submit endpoint.

    Any HTTP response (e.g. 405) proves the endpoint is reachable and the
    TLS handshake succeeded. Raises on connection or timeout errors.
    """
    get(
        endpoint or ENDPOINTS[env],
        pkcs12_filename=credential.pfx_path,
        pkcs12_password=credential.password,
        timeout=SUBMIT_TIMEOUT,
    )
