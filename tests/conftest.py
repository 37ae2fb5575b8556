from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from emissor_abrasf.models.issuer import IssuerProfile
from emissor_abrasf.models.transaction import FiscalTransaction


def xml_text(el: etree._Element, xpath: str) -> str | None:
    """Extract text from an XML element by xpath."""
    found = el.find(xpath)
    return found.text if found is not None else None


# --- Issuer fixtures ---


@pytest.fixture
def issuer_dict() -> dict:
    return {
        "inscricao_municipal": "123456001",
        "cnpj": "12345678000199",
        "razao_social": "ACME SERVICOS CONTABEIS LTDA",
        "item_lista_servico": "17.19",
        "codigo_tributacao_municipio": "171901",
        "codigo_cnae": "6920601",
        "aliquota_iss": "5.00",
        "ambiente": "homologacao",
        "certificado": "/fake/cert.pfx",
    }


@pytest.fixture
def issuer(issuer_dict: dict) -> IssuerProfile:
    return IssuerProfile.from_dict(issuer_dict)


# --- Transaction fixtures ---


@pytest.fixture
def recipient_dict() -> dict:
    return {
        "cpf_cnpj": "98.765.432/0001-10",
        "razao_social": "CLIENTE EXEMPLO LTDA",
        "email": "financeiro@cliente.com.br",
        "telefone": "(71) 3333-4444",
        "endereco": "Av. Tancredo Neves",
        "numero": "1000",
        "bairro": "Caminho das Arvores",
        "codigo_municipio": "2927408",
        "uf": "BA",
        "cep": "41820-020",
    }


@pytest.fixture
def transaction_dict(recipient_dict: dict) -> dict:
    return {
        "transaction_id": "pedido-0001",
        "tomador": recipient_dict,
        "valor_servicos": "1000.00",
        "discriminacao": "Servicos de contabilidade",
        "iss_retido": False,
    }


@pytest.fixture
def transaction(transaction_dict: dict) -> FiscalTransaction:
    return FiscalTransaction.from_dict(transaction_dict)


@pytest.fixture
def make_transaction(transaction_dict: dict):
    """Build a FiscalTransaction from the base payload with overrides."""

    def _make(**overrides) -> FiscalTransaction:
        return FiscalTransaction.from_dict({**transaction_dict, **overrides})

    return _make


@pytest.fixture
def rate() -> Decimal:
    return Decimal("5.00")


# --- Data dir fixture ---


@pytest.fixture
def data_dir(tmp_path):
    """Point the document store and the RPS counter at a temporary directory."""
    d = tmp_path / "data"
    with patch("emissor_abrasf.config.get_data_dir", return_value=d):
        yield d


# --- Certificate / PFX fixtures ---


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "Test Certificate"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture
def test_pfx(tmp_path, test_key_and_cert):
    key, cert = test_key_and_cert
    password = b"testpass"
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_data)
    return str(pfx_path), "testpass"


# --- Config dir fixture ---


@pytest.fixture
def config_dir(tmp_path, issuer_dict):
    import yaml

    cfg = tmp_path / "config"
    issuers = cfg / "issuers"
    issuers.mkdir(parents=True)
    (issuers / "acme.yaml").write_text(yaml.dump(issuer_dict))
    return cfg
