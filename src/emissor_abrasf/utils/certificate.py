from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from cryptography.hazmat.primitives.serialization import pkcs12


def validate_certificate(pfx_path: str, password: str) -> dict:
    """Open a .pfx/.p12 credential and return its subject and validity window.

    Raises ValueError if the password is wrong or the file holds no certificate.
    """
    pfx_data = Path(pfx_path).read_bytes()
    _, certificate, _ = pkcs12.load_key_and_certificates(pfx_data, password.encode())

    if certificate is None:
        raise ValueError("No certificate found in .pfx file")

    now = datetime.now(UTC)
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": certificate.not_valid_after_utc,
        "valid": certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc,
        "serial": certificate.serial_number,
    }
