from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import datetime

from lxml import etree
from requests import get, post

from fiskal.config import ENDPOINTS
from fiskal.models.issuer import Issuer
from fiskal.models.outbox import OutboxFilter, OutboxHeader
from fiskal.services.exceptions import ConfigurationError, ProtocolError, TransportError
from fiskal.services.http_retry import ERACUN_READ, ERACUN_SUBMIT, raise_for_retryable_status, retry_call
from fiskal.services.transport import TransportConfig

logger = logging.getLogger(__name__)

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)


def base_url(issuer: Issuer) -> str:
    return ENDPOINTS["production" if issuer.eracun_production else "test"]["eracun"]


def _credentials(issuer: Issuer) -> dict[str, str | None]:
    missing = [
        label
        for label, value in (
            ("username", issuer.eracun_username),
            ("password", issuer.eracun_password),
            ("software_id", issuer.software_id),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(f"moj-eRačun credentials incomplete: missing {', '.join(missing)}")
    return {
        "Username": issuer.eracun_username,
        "Password": issuer.eracun_password,
        "CompanyId": issuer.oib,
        "CompanyBu": issuer.company_bu,
        "SoftwareId": issuer.software_id,
    }


def _check(resp, action: str) -> str:
    body = resp.text or ""
    if not resp.ok:
        raise TransportError(
            f"moj-eRačun {action} failed ({resp.status_code}): {body[:500]}",
            raw_response=body,
            status_code=resp.status_code,
        )
    return body


def submit(
    xml: str,
    issuer: Issuer,
    transport: TransportConfig,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> dict:
    """POST a UBL document to /send and return the decoded JSON response.

    Raises TransportError on a non-2xx status, ProtocolError when the body is
    not JSON or has no ElectronicId. Both keep the raw body.
    """
    payload = {**_credentials(issuer), "File": xml}
    url = f"{base_url(issuer)}/send"

    def _do_post():
        return post(
            url,
            json=payload,
            headers={"User-Agent": transport.user_agent},
            timeout=transport.eracun_timeout,
            verify=transport.verify,
        )

    body = _check(retry_call(_do_post, ERACUN_SUBMIT, sleep_func=sleep_func), "send")
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise ProtocolError(f"moj-eRačun returned non-JSON response: {body[:200]}", raw_response=body) from exc
    if not isinstance(data, dict) or not data.get("ElectronicId"):
        raise ProtocolError("moj-eRačun response has no ElectronicId", raw_response=body)
    return data


def _child_text(el: etree._Element, name: str) -> str | None:
    found = el.find(f"{{*}}{name}")
    if found is None or found.text is None:
        return None
    return found.text.strip() or None


def _child_int(el: etree._Element, name: str) -> int | None:
    text = _child_text(el, name)
    try:
        return int(text) if text is not None else None
    except ValueError:
        return None


def _child_datetime(el: etree._Element, name: str) -> datetime | None:
    text = _child_text(el, name)
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.rstrip("Z"))
    except ValueError:
        logger.debug("Unparseable %s timestamp %r", name, text)
        return None


def parse_outbox_xml(body: str) -> list[OutboxHeader]:
    """Parse /queryOutbox XML into headers, ignoring namespaces."""
    try:
        root = etree.fromstring(body.encode("utf-8"), _PARSER)
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise ProtocolError(f"Malformed outbox response: {exc}", raw_response=body) from exc

    headers = []
    for el in root.iter("{*}InboxDocumentHeader"):
        electronic_id = _child_text(el, "ElectronicId")
        if not electronic_id:
            continue
        headers.append(
            OutboxHeader(
                electronic_id=electronic_id,
                document_nr=_child_text(el, "DocumentNr"),
                document_type_id=_child_int(el, "DocumentTypeId"),
                document_type_name=_child_text(el, "DocumentTypeName"),
                status_id=_child_int(el, "StatusId"),
                status_name=_child_text(el, "StatusName"),
                recipient_business_number=_child_text(el, "RecipientBusinessNumber"),
                recipient_business_unit=_child_text(el, "RecipientBusinessUnit"),
                recipient_business_name=_child_text(el, "RecipientBusinessName"),
                created=_child_datetime(el, "Created"),
                updated=_child_datetime(el, "Updated"),
                sent=_child_datetime(el, "Sent"),
                delivered=_child_datetime(el, "Delivered"),
            )
        )
    return headers


def _read_post(url: str, payload: dict, transport: TransportConfig, sleep_func):
    def _do_post():
        resp = post(
            url,
            json=payload,
            headers={"User-Agent": transport.user_agent},
            timeout=transport.eracun_timeout,
            verify=transport.verify,
        )
        raise_for_retryable_status(resp, ERACUN_READ)
        return resp

    return retry_call(_do_post, ERACUN_READ, sleep_func=sleep_func)


def query_outbox(
    issuer: Issuer,
    outbox_filter: OutboxFilter | None,
    transport: TransportConfig,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> list[OutboxHeader]:
    """Query /queryOutbox; unset filter fields are not sent."""
    payload = {**_credentials(issuer), **(outbox_filter or OutboxFilter()).to_payload()}
    resp = _read_post(f"{base_url(issuer)}/queryOutbox", payload, transport, sleep_func)
    return parse_outbox_xml(_check(resp, "queryOutbox"))


def download_document(
    electronic_id: str,
    issuer: Issuer,
    transport: TransportConfig,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> str:
    """Fetch a document's XML through /receive."""
    payload = {**_credentials(issuer), "ElectronicId": int(electronic_id)}
    resp = _read_post(f"{base_url(issuer)}/receive", payload, transport, sleep_func)
    return _check(resp, "receive")


def ping(issuer: Issuer, transport: TransportConfig) -> bool:
    """True when /Ping answers ``{"Status": "ok"}``."""
    resp = get(
        f"{base_url(issuer)}/Ping",
        headers={"User-Agent": transport.user_agent},
        timeout=transport.eracun_timeout,
        verify=transport.verify,
    )
    body = _check(resp, "Ping")
    try:
        return str(json.loads(body).get("Status", "")).lower() == "ok"
    except (ValueError, AttributeError):
        return False
