from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import requests.exceptions
from cryptography.x509 import Certificate
from lxml import etree

from fiskal.models.invoice import InvoiceSnapshot
from fiskal.models.issuer import Issuer
from fiskal.models.outcome import METHOD_FINA, STATUS_FISCALIZED, FiscalResult
from fiskal.services import archive
from fiskal.services.cis_builder import build_request
from fiskal.services.cis_client import endpoint_for, interpret_response, send_request, wrap_soap
from fiskal.services.exceptions import ConfigurationError, TransportError
from fiskal.services.http_retry import CIS_SUBMIT, retry_call
from fiskal.services.transport import TransportConfig
from fiskal.services.xml_signer import sign_request
from fiskal.utils.certificate import extract_oib_from_certificate, load_pfx
from fiskal.utils.zki import zki_for_invoice

logger = logging.getLogger(__name__)


@dataclass
class PreparedRequest:
    """A signed CIS request, ready to be posted."""

    snapshot: InvoiceSnapshot
    oib: str
    zki: str
    signed: etree._Element
    envelope: bytes
    url: str

    @property
    def signed_xml(self) -> bytes:
        return etree.tostring(self.signed, xml_declaration=True, encoding="utf-8")


@dataclass(frozen=True)
class _KeyMaterial:
    key_pem: bytes
    cert_pem: bytes
    certificate: Certificate


def resolve_fiscal_oib(issuer: Issuer, certificate: Certificate) -> str:
    """OIB to fiscalize under: configured fiscal OIB, then the certificate's, then the issuer's."""
    if issuer.fiscal_oib:
        return issuer.fiscal_oib
    from_cert = extract_oib_from_certificate(certificate)
    if from_cert:
        if from_cert != issuer.oib:
            logger.info("Using OIB %s from certificate instead of issuer OIB %s", from_cert, issuer.oib)
        return from_cert
    return issuer.oib


def _load_keys(issuer: Issuer) -> _KeyMaterial:
    if not issuer.fina_enabled:
        raise ConfigurationError(f"FINA fiscalization is not enabled for {issuer.name}")
    if not issuer.cert_password:
        raise ConfigurationError("Certificate password not configured (FISKAL_CERT_PASSWORD or keyring)")
    key_pem, cert_pem, certificate = load_pfx(issuer.cert_path, issuer.cert_password)
    return _KeyMaterial(key_pem, cert_pem, certificate)


def _build(snapshot: InvoiceSnapshot, issuer: Issuer, keys: _KeyMaterial) -> PreparedRequest:
    oib = resolve_fiscal_oib(issuer, keys.certificate)
    zki = zki_for_invoice(snapshot, issuer, oib)
    signed = sign_request(build_request(snapshot, issuer, oib, zki), keys.key_pem, keys.cert_pem)
    return PreparedRequest(
        snapshot=snapshot,
        oib=oib,
        zki=zki,
        signed=signed,
        envelope=wrap_soap(signed),
        url=endpoint_for(issuer.fina_environment),
    )


def prepare(snapshot: InvoiceSnapshot, issuer: Issuer) -> PreparedRequest:
    """Load the certificate, compute the ZKI, build and sign the request."""
    return _build(snapshot, issuer, _load_keys(issuer))


def fiscalize(
    snapshot: InvoiceSnapshot,
    issuer: Issuer,
    transport: TransportConfig,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> FiscalResult:
    """Send one invoice to CIS and return the fiscalized result.

    Raises ConfigurationError, TransportError or ProtocolError. Each retry
    builds and signs a new request so no message id is sent twice.
    """
    keys = _load_keys(issuer)
    sent: list[PreparedRequest] = []

    def _attempt() -> str:
        prepared = _build(snapshot, issuer, keys)
        sent.append(prepared)
        return send_request(prepared.envelope, prepared.url, transport)

    try:
        body = retry_call(_attempt, CIS_SUBMIT, sleep_func=sleep_func)
    except TransportError as exc:
        archive.archive(METHOD_FINA, snapshot.invoice_id, "response", exc.raw_response)
        raise
    except requests.exceptions.RequestException as exc:
        raise TransportError(f"Network error: {exc}") from exc
    finally:
        if sent:
            archive.archive(METHOD_FINA, snapshot.invoice_id, "request", sent[-1].envelope)

    archive.archive(METHOD_FINA, snapshot.invoice_id, "response", body)
    jir = interpret_response(body)
    prepared = sent[-1]

    logger.info("Invoice %s fiscalized, JIR %s", snapshot.number, jir)
    return FiscalResult(
        invoice_id=snapshot.invoice_id,
        invoice_number=snapshot.number,
        status=STATUS_FISCALIZED,
        method=METHOD_FINA,
        message=f"Fiscalized with JIR {jir}",
        jir=jir,
        # the code that went out in ZastKod, not a recomputation
        zki=prepared.zki,
        raw_response=body,
        submitted_at=datetime.now(UTC).isoformat(timespec="seconds"),
    )
