from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

import requests.exceptions

from fiskal.models.invoice import InvoiceSnapshot
from fiskal.models.issuer import Issuer
from fiskal.models.outbox import OutboxFilter
from fiskal.models.outcome import METHOD_ERACUN, STATUS_FISCALIZED, FiscalResult, ReconcileSummary
from fiskal.services import archive, eracun_client
from fiskal.services.exceptions import ConfigurationError, TransportError
from fiskal.services.transport import TransportConfig
from fiskal.services.ubl_builder import build_invoice
from fiskal.utils import registry

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_STATUS = "sent"


def _require_enabled(issuer: Issuer) -> None:
    if not issuer.eracun_enabled:
        raise ConfigurationError(f"moj-eRačun is not enabled for {issuer.name}")


def fiscalize(
    snapshot: InvoiceSnapshot,
    issuer: Issuer,
    transport: TransportConfig,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> FiscalResult:
    """Build the UBL invoice, send it to moj-eRačun and return the result.

    Raises ConfigurationError, ValidationError, TransportError or ProtocolError.
    """
    _require_enabled(issuer)
    xml = build_invoice(snapshot, issuer)
    archive.archive(METHOD_ERACUN, snapshot.invoice_id, "request", xml)

    try:
        data = eracun_client.submit(xml, issuer, transport, sleep_func=sleep_func)
    except TransportError as exc:
        archive.archive(METHOD_ERACUN, snapshot.invoice_id, "response", exc.raw_response, suffix=".txt")
        raise
    except requests.exceptions.RequestException as exc:
        raise TransportError(f"Network error: {exc}") from exc

    raw = json.dumps(data, ensure_ascii=False)
    archive.archive(METHOD_ERACUN, snapshot.invoice_id, "response", raw, suffix=".json")

    electronic_id = str(data["ElectronicId"])
    remote_status = str(data.get("StatusName") or DEFAULT_REMOTE_STATUS).lower()
    logger.info("Invoice %s sent to moj-eRačun as %s (%s)", snapshot.number, electronic_id, remote_status)
    return FiscalResult(
        invoice_id=snapshot.invoice_id,
        invoice_number=snapshot.number,
        status=STATUS_FISCALIZED,
        method=METHOD_ERACUN,
        message=f"Sent to moj-eRačun, document {electronic_id} ({remote_status})",
        electronic_id=electronic_id,
        remote_status=remote_status,
        raw_response=raw,
        submitted_at=datetime.now(UTC).isoformat(timespec="seconds"),
    )


def reconcile(
    issuer: Issuer,
    transport: TransportConfig,
    outbox_filter: OutboxFilter | None = None,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> ReconcileSummary:
    """Refresh remote_status of sent invoices from the outbox.

    Only records fiscalized through moj-eRačun with a known electronic id are
    considered; changed statuses are written in one registry update.
    """
    _require_enabled(issuer)
    local = {
        str(e["electronic_id"]): e
        for e in registry.list_invoices(status=STATUS_FISCALIZED, method=METHOD_ERACUN)
        if e.get("electronic_id")
    }
    summary = ReconcileSummary()
    if not local:
        logger.info("No moj-eRačun invoices to reconcile")
        return summary

    try:
        headers = eracun_client.query_outbox(issuer, outbox_filter, transport, sleep_func=sleep_func)
    except requests.exceptions.RequestException as exc:
        raise TransportError(f"Network error: {exc}") from exc

    updates: dict[str, dict] = {}
    for header in headers:
        entry = local.get(header.electronic_id)
        if entry is None or not header.status_name:
            continue
        summary.checked += 1
        remote = header.status_name.lower()
        current = entry.get("remote_status")
        if remote == current:
            continue
        updates[str(entry["id"])] = {"remote_status": remote}
        summary.changes[str(entry["id"])] = (current, remote)
        logger.info("Invoice %s: remote status %s -> %s", entry.get("number", entry["id"]), current, remote)

    summary.updated = registry.update_many(updates)
    return summary
