from __future__ import annotations

import copy
import logging

from lxml import etree
from requests import post

from fiskal.config import ENDPOINTS, SOAP_NS
from fiskal.services.exceptions import ProtocolError, TransportError
from fiskal.services.transport import TransportConfig

logger = logging.getLogger(__name__)

SOAP_HEADERS = {
    "Content-Type": "text/xml; charset=utf-8",
    "SOAPAction": '""',
}

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)


def endpoint_for(environment: str) -> str:
    return ENDPOINTS["production" if environment == "production" else "test"]["fina"]


def wrap_soap(signed: etree._Element) -> bytes:
    """Put a signed request into a bare SOAP 1.1 envelope."""
    envelope = etree.Element(f"{{{SOAP_NS}}}Envelope", nsmap={"soapenv": SOAP_NS})
    body = etree.SubElement(envelope, f"{{{SOAP_NS}}}Body")
    body.append(copy.deepcopy(signed))
    return etree.tostring(envelope, xml_declaration=True, encoding="utf-8")


def _parse(body: str) -> etree._Element:
    try:
        return etree.fromstring(body.encode("utf-8"), _PARSER)
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise ProtocolError(f"Malformed CIS response: {exc}", raw_response=body) from exc


def _text(el: etree._Element | None) -> str:
    return (el.text or "").strip() if el is not None else ""


def _fault_or_error(root: etree._Element) -> tuple[str | None, str] | None:
    """Return (code, message) from a SOAP Fault or the first Greska, if any."""
    fault = next(root.iter("{*}Fault"), None)
    if fault is not None:
        return None, _text(fault.find("faultstring")) or _text(fault.find("{*}faultstring")) or "SOAP fault"
    greska = next(root.iter("{*}Greska"), None)
    if greska is not None:
        return _text(greska.find("{*}SifraGreske")) or None, _text(greska.find("{*}PorukaGreske"))
    return None


def interpret_response(body: str) -> str:
    """Extract the JIR from a CIS response or raise ProtocolError.

    Checked in order: SOAP Fault, authority error list, non-empty Jir.
    """
    root = _parse(body)

    problem = _fault_or_error(root)
    if problem is not None:
        code, message = problem
        text = f"[{code}] {message}" if code else message
        raise ProtocolError(f"CIS error: {text}", raw_response=body, code=code)

    jir = _text(next(root.iter("{*}Jir"), None))
    if not jir:
        raise ProtocolError("CIS response contains no JIR (no receipt received)", raw_response=body)
    return jir


def _describe_http_error(status_code: int, body: str) -> str:
    detail = ""
    try:
        problem = _fault_or_error(etree.fromstring(body.encode("utf-8"), _PARSER))
    except (etree.XMLSyntaxError, ValueError):
        problem = None
    if problem is not None:
        code, message = problem
        detail = f"[{code}] {message}" if code else message
    return f"CIS HTTP error ({status_code}): {detail or body[:500]}"


def send_request(envelope: bytes, url: str, transport: TransportConfig) -> str:
    """POST a SOAP envelope to CIS and return the response body.

    Raises TransportError for non-2xx statuses. requests exceptions propagate
    so the caller's retry policy can see them.
    """
    logger.debug("POST %s (%d bytes)", url, len(envelope))
    resp = post(
        url,
        data=envelope,
        headers={**SOAP_HEADERS, "User-Agent": transport.user_agent},
        timeout=transport.cis_timeout,
        verify=transport.verify,
    )
    body = resp.text or ""
    if not resp.ok:
        raise TransportError(
            _describe_http_error(resp.status_code, body),
            raw_response=body,
            status_code=resp.status_code,
        )
    return body
