from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import requests.exceptions
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from urllib3.exceptions import MaxRetryError, NewConnectionError

from fiskal.models.invoice import InvoiceSnapshot
from fiskal.models.issuer import Issuer

ISSUER_OIB = "12345678903"
BUYER_OIB = "69435151530"


# --- Issuer fixtures ---


@pytest.fixture
def issuer_dict() -> dict:
    return {
        "oib": ISSUER_OIB,
        "name": "TOPLANA D.O.O.",
        "street": "Ilica 1",
        "city": "Zagreb",
        "postal_code": "10000",
        "bank_account": "HR1210010051863000160",
        "in_vat_system": True,
        "business_premise": "POS1",
        "register_device": "2",
        "operator_oib": "98765432106",
        "fina": {
            "enabled": True,
            "environment": "test",
            "cert_path": "/nonexistent/cert.p12",
            "cert_password": "secret",
        },
        "eracun": {
            "enabled": True,
            "environment": "test",
            "username": "4321",
            "password": "pw",
            "software_id": "Test-002",
        },
    }


@pytest.fixture
def issuer(issuer_dict: dict) -> Issuer:
    return Issuer.from_dict(issuer_dict)


# --- Invoice fixtures ---


def _make_record(invoice_id: str = "inv-1", **overrides) -> dict:
    record = {
        "id": invoice_id,
        "number": "7/POS1/2",
        "issued_at": "2025-10-01T09:30:00",
        "due_at": "2025-10-31",
        "subtotal": "100.00",
        "tax_amount": "5.00",
        "total": "105.00",
        "tax_rate": "5",
        "payment_method": "T",
        "buyer": {
            "name": "Ivo Ivić",
            "street": "Vukovarska 10",
            "city": "Zagreb",
            "postal_code": "10000",
            "oib": BUYER_OIB,
        },
        "items": [
            {
                "description": "Grijanje prostora",
                "unit": "kWh",
                "quantity": "800",
                "unit_price": "0.125",
                "amount": "100.00",
                "tax_rate": "5",
            }
        ],
        "status": "not_required",
        "method": None,
    }
    record.update(overrides)
    return record


@pytest.fixture
def make_record():
    return _make_record


@pytest.fixture
def record() -> dict:
    return _make_record()


@pytest.fixture
def snapshot(record: dict) -> InvoiceSnapshot:
    return InvoiceSnapshot.from_record(record)


# --- Network failure fixtures ---


@pytest.fixture
def refused_error() -> requests.exceptions.ConnectionError:
    """A connection that was never established, as requests raises it."""
    reason = NewConnectionError(None, "Failed to establish a new connection: [Errno 111] Connection refused")
    return requests.exceptions.ConnectionError(MaxRetryError(None, "/send", reason=reason))


@pytest.fixture
def aborted_error() -> requests.exceptions.ConnectionError:
    """A connection dropped after the request was written."""
    return requests.exceptions.ConnectionError(
        "('Connection aborted.', RemoteDisconnected('Remote end closed connection without response'))"
    )


# --- Data dir fixture ---


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    d = tmp_path / "data"
    d.mkdir()
    monkeypatch.setenv("FISKAL_DATA_DIR", str(d))
    return d


# --- Certificate / PFX fixtures ---


def _self_signed(common_name: str, organization: str):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "HR"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
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


@pytest.fixture(scope="session")
def test_key_and_cert():
    return _self_signed("Test Certificate", "Test Org")


@pytest.fixture(scope="session")
def oib_key_and_cert():
    return _self_signed("FISKAL 1", "TOPLANA D.O.O. HR11111111119")


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


def _write_pfx(path, key, cert, password: bytes = b"testpass", with_key: bool = True) -> str:
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key if with_key else None,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )
    path.write_bytes(pfx_data)
    return str(path)


@pytest.fixture
def write_pfx():
    return _write_pfx


@pytest.fixture
def test_pfx(tmp_path, test_key_and_cert):
    key, cert = test_key_and_cert
    return _write_pfx(tmp_path / "test.p12", key, cert), "testpass"


@pytest.fixture
def fina_issuer(issuer_dict, test_pfx) -> Issuer:
    path, password = test_pfx
    issuer_dict["fina"].update(cert_path=path, cert_password=password)
    return Issuer.from_dict(issuer_dict)
