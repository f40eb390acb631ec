"""Fiscalization workflow: eligibility, state transitions and batch runs.

An invoice moves ``not_required -> fiscalizing -> fiscalized | error | too_old``.
``fiscalized`` is final. ``error`` and ``too_old`` may be retried. Each
attempt runs under a per-invoice file lock, and the outcome is written to the
registry before the function returns, including when the attempt fails.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path

from fiskal import config
from fiskal.models.invoice import InvoiceSnapshot, parse_local_datetime
from fiskal.models.issuer import Issuer
from fiskal.models.outbox import OutboxFilter
from fiskal.models.outcome import (
    METHOD_ERACUN,
    METHOD_FINA,
    METHODS,
    STATUS_ERROR,
    STATUS_FISCALIZED,
    STATUS_FISCALIZING,
    STATUS_TOO_OLD,
    BatchSummary,
    FiscalResult,
    ReconcileSummary,
)
from fiskal.services import archive, eracun, fina
from fiskal.services.exceptions import (
    AlreadyFiscalizedError,
    EligibilityError,
    FiscalError,
    InvoiceNotFoundError,
)
from fiskal.services.transport import TransportConfig
from fiskal.services.ubl_builder import build_invoice
from fiskal.utils import registry
from fiskal.utils.zki import zki_for_invoice

logger = logging.getLogger(__name__)

MAX_INVOICE_AGE_DAYS = 30
MAX_INVOICE_AGE = timedelta(days=MAX_INVOICE_AGE_DAYS)
BATCH_DELAY = 0.1


def _now() -> datetime:
    return datetime.now(config.ZAGREB).replace(tzinfo=None)


def load_issuer(slug: str = "default") -> Issuer:
    return Issuer.from_dict(config.load_issuer(slug))


def _check_method(method: str) -> None:
    if method not in METHODS:
        raise ValueError(f"Unknown fiscalization method {method!r}; use one of {', '.join(METHODS)}")


def _dispatch(
    method: str,
    snapshot: InvoiceSnapshot,
    issuer: Issuer,
    transport: TransportConfig,
) -> FiscalResult:
    if method == METHOD_FINA:
        return fina.fiscalize(snapshot, issuer, transport)
    if method == METHOD_ERACUN:
        return eracun.fiscalize(snapshot, issuer, transport)
    raise ValueError(f"Unknown fiscalization method {method!r}")


def _error_result(
    invoice_id: str,
    number: str | None,
    method: str,
    message: str,
    raw_response: str | None = None,
) -> FiscalResult:
    return FiscalResult(
        invoice_id=invoice_id,
        invoice_number=number,
        status=STATUS_ERROR,
        method=method,
        message=message,
        raw_response=raw_response,
    )


def check_age(record: dict, now: datetime | None = None) -> FiscalResult | None:
    """Return a too_old result when the invoice is past the CIS age limit.

    An unreadable issue date is left for snapshot validation to report.
    """
    try:
        issued_at = parse_local_datetime(record["issued_at"])
    except (KeyError, TypeError, ValueError):
        return None
    age = (now or _now()) - issued_at
    if age <= MAX_INVOICE_AGE:
        return None
    return FiscalResult(
        invoice_id=str(record["id"]),
        invoice_number=record.get("number"),
        status=STATUS_TOO_OLD,
        method=METHOD_FINA,
        message=(
            f"Invoice from {issued_at:%d.%m.%Y} is too old to fiscalize. "
            f"Invoice is {age.days} days old. "
            f"Maximum allowed age is {MAX_INVOICE_AGE_DAYS} days."
        ),
    )


def fiscalize_invoice(
    invoice_id: str,
    method: str,
    *,
    issuer: Issuer | None = None,
    transport: TransportConfig | None = None,
) -> FiscalResult:
    """Fiscalize one invoice and persist the outcome.

    Raises EligibilityError (already fiscalized, in progress, not found)
    without touching the record. Every other failure is recorded as ``error``
    and returned.
    """
    _check_method(method)
    issuer = issuer or load_issuer()
    transport = transport or TransportConfig.from_env()

    with registry.invoice_lock(invoice_id):
        record = registry.get_invoice(invoice_id)
        number = record.get("number")
        if record.get("status") == STATUS_FISCALIZED:
            raise AlreadyFiscalizedError(f"Invoice {number or invoice_id} is already fiscalized")

        if method == METHOD_FINA:
            too_old = check_age(record)
            if too_old is not None:
                logger.warning("Invoice %s: %s", number, too_old.message)
                registry.save_outcome(invoice_id, too_old.to_fiscal_fields())
                return too_old

        registry.begin_submission(invoice_id, method)
        try:
            snapshot = InvoiceSnapshot.from_record(record)
            result = _dispatch(method, snapshot, issuer, transport)
        except FiscalError as exc:
            logger.error("Invoice %s (%s): %s", number, method, exc.message)
            result = _error_result(invoice_id, number, method, exc.message, exc.raw_response)
        except Exception as exc:
            logger.exception("Invoice %s (%s) failed", number, method)
            result = _error_result(invoice_id, number, method, f"{type(exc).__name__}: {exc}")
        except BaseException:
            registry.save_outcome(
                invoice_id,
                _error_result(invoice_id, number, method, "Interrupted during submission").to_fiscal_fields(),
            )
            raise

        registry.save_outcome(invoice_id, result.to_fiscal_fields())
        return result


def fiscalize_batch(
    invoice_ids: Iterable[str],
    method: str,
    *,
    issuer: Issuer | None = None,
    transport: TransportConfig | None = None,
    delay: float = BATCH_DELAY,
    sleep_func: Callable[[float], object] = time.sleep,
) -> BatchSummary:
    """Fiscalize invoices one after another; a failing item never stops the rest."""
    _check_method(method)
    issuer = issuer or load_issuer()
    transport = transport or TransportConfig.from_env()
    ids = [str(i) for i in invoice_ids]
    summary = BatchSummary()

    for index, invoice_id in enumerate(ids):
        skipped = False
        try:
            result = fiscalize_invoice(invoice_id, method, issuer=issuer, transport=transport)
        except InvoiceNotFoundError as exc:
            result = _error_result(invoice_id, None, method, exc.message)
        except EligibilityError as exc:
            skipped = True
            status = STATUS_FISCALIZED if isinstance(exc, AlreadyFiscalizedError) else STATUS_FISCALIZING
            result = FiscalResult(invoice_id=invoice_id, status=status, method=method, message=exc.message)
        except Exception as exc:
            logger.exception("Batch item %s failed outside the submission", invoice_id)
            result = _error_result(invoice_id, None, method, f"{type(exc).__name__}: {exc}")

        summary.add(result, skipped=skipped)
        remote_call = not skipped and result.status != STATUS_TOO_OLD
        if remote_call and delay and index < len(ids) - 1:
            sleep_func(delay)

    logger.info(
        "Batch (%s): %d total, %d fiscalized, %d errors, %d too old, %d skipped",
        method,
        summary.total,
        summary.success_count,
        summary.error_count,
        summary.too_old_count,
        summary.skipped_count,
    )
    return summary


def fiscalize_pending(
    method: str,
    *,
    issuer: Issuer | None = None,
    transport: TransportConfig | None = None,
    delay: float = BATCH_DELAY,
    sleep_func: Callable[[float], object] = time.sleep,
) -> BatchSummary:
    """Batch over every invoice still in ``not_required``."""
    return fiscalize_batch(
        registry.pending_ids(),
        method,
        issuer=issuer,
        transport=transport,
        delay=delay,
        sleep_func=sleep_func,
    )


def sync_outbox(
    *,
    issuer: Issuer | None = None,
    transport: TransportConfig | None = None,
    outbox_filter: OutboxFilter | None = None,
) -> ReconcileSummary:
    return eracun.reconcile(
        issuer or load_issuer(),
        transport or TransportConfig.from_env(),
        outbox_filter,
    )


def security_code(invoice_id: str, issuer: Issuer | None = None, oib: str | None = None) -> str:
    """Re-derive an invoice's ZKI for audit."""
    issuer = issuer or load_issuer()
    snapshot = InvoiceSnapshot.from_record(registry.get_invoice(invoice_id))
    return zki_for_invoice(snapshot, issuer, oib)


def dry_run(invoice_id: str, method: str, *, issuer: Issuer | None = None) -> Path:
    """Build (and for FINA sign) the document, save it, and send nothing."""
    _check_method(method)
    issuer = issuer or load_issuer()
    snapshot = InvoiceSnapshot.from_record(registry.get_invoice(invoice_id))
    if method == METHOD_FINA:
        content: bytes | str = fina.prepare(snapshot, issuer).signed_xml
    else:
        content = build_invoice(snapshot, issuer)
    return archive.write_document(method, invoice_id, "dry_run", content)
