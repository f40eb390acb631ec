from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path

from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509 import Certificate

from fiskal.services.exceptions import ConfigurationError

# FINA application certificates carry the OIB in one of these subject forms
_OIB_PATTERNS = (
    re.compile(r"HR(\d{11})"),
    re.compile(r"VATHR-(\d{11})"),
    re.compile(r"O=[^,]*?(\d{11})"),
)


def _read_pfx(pfx_path: str | None, password: str | None):
    if not pfx_path:
        raise ConfigurationError("No certificate configured for FINA fiscalization")
    path = Path(pfx_path)
    if not path.is_file():
        raise ConfigurationError(f"Certificate file not found: {pfx_path}")
    try:
        return pkcs12.load_key_and_certificates(
            path.read_bytes(), (password or "").encode() or None
        )
    except ValueError as exc:
        raise ConfigurationError(f"Cannot open certificate {path.name}: {exc}") from exc


def load_pfx(pfx_path: str | None, password: str | None) -> tuple[bytes, bytes, Certificate]:
    """Load a .pfx/.p12 file and return (private_key_pem, cert_pem, certificate).

    Raises ConfigurationError for a missing file, a wrong password or a
    container without a private key.
    """
    private_key, certificate, _ = _read_pfx(pfx_path, password)

    if private_key is None:
        raise ConfigurationError("Certificate has no private key")
    if certificate is None:
        raise ConfigurationError("No certificate found in .pfx file")

    key_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )
    cert_pem = certificate.public_bytes(Encoding.PEM)
    return key_pem, cert_pem, certificate


def extract_oib_from_certificate(certificate: Certificate) -> str | None:
    """Find the issuer OIB in the certificate subject, if present."""
    subject = certificate.subject.rfc4514_string()
    for pattern in _OIB_PATTERNS:
        match = pattern.search(subject)
        if match:
            return match.group(1)
    return None


def validate_certificate(pfx_path: str, password: str) -> dict:
    """Return subject, validity window and embedded OIB for display."""
    _, certificate, _ = _read_pfx(pfx_path, password)

    if certificate is None:
        raise ConfigurationError("No certificate found in .pfx file")

    now = datetime.now(UTC)
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": certificate.not_valid_after_utc,
        "valid": certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc,
        "serial": certificate.serial_number,
        "oib": extract_oib_from_certificate(certificate),
    }
