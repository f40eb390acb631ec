"""Local invoice store: the persisted records the fiscalization workflow reads and updates.

Invoices are produced elsewhere (billing, CSV import) and land here as plain
dicts in ``invoices.json``. Every read-modify-write happens under a file lock
that is held only for the duration of the disk I/O, never across a network
call. A second, per-invoice lock serializes submission attempts.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from fiskal import config as _config
from fiskal.models.outcome import (
    STATUS_ERROR,
    STATUS_FISCALIZED,
    STATUS_FISCALIZING,
    STATUS_NOT_REQUIRED,
    STATUS_TOO_OLD,
)
from fiskal.services.exceptions import (
    AlreadyFiscalizedError,
    InvoiceNotFoundError,
    SubmissionInProgressError,
)

logger = logging.getLogger(__name__)

# A record stuck in "fiscalizing" longer than this belongs to a dead process
STALE_SUBMISSION_AFTER = timedelta(minutes=10)

_SUBMITTABLE = frozenset({STATUS_NOT_REQUIRED, STATUS_ERROR, STATUS_TOO_OLD})


def _registry_path() -> Path:
    return _config.get_data_dir() / "invoices.json"


def _lock_dir() -> Path:
    return _config.get_data_dir() / "locks"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s -> %s", path, backup)
    return backup


@contextmanager
def _locked() -> Iterator[None]:
    """Hold an exclusive file lock during registry read-modify-write."""
    rp = _registry_path()
    rp.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(rp.with_suffix(".lock"))
    with lock:
        yield


def _load() -> list[dict[str, Any]]:
    rp = _registry_path()
    if not rp.exists():
        return []
    try:
        return json.loads(rp.read_text())
    except (json.JSONDecodeError, ValueError):
        _backup_corrupt(rp)
        return []


def _save(entries: list[dict[str, Any]]) -> None:
    rp = _registry_path()
    rp.parent.mkdir(parents=True, exist_ok=True)
    tmp = rp.with_suffix(".tmp")
    tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False) + "\n")
    os.replace(tmp, rp)


def _find(entries: list[dict[str, Any]], invoice_id: str) -> dict[str, Any] | None:
    return next((e for e in entries if str(e.get("id")) == str(invoice_id)), None)


@contextmanager
def invoice_lock(invoice_id: str) -> Iterator[None]:
    """Exclusive, non-blocking guard for one submission attempt on *invoice_id*."""
    lock_dir = _lock_dir()
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock = FileLock(lock_dir / f"{invoice_id}.lock", timeout=0)
    try:
        lock.acquire()
    except Timeout:
        raise SubmissionInProgressError(
            f"Invoice {invoice_id} is being fiscalized by another process"
        ) from None
    try:
        yield
    finally:
        lock.release()


def list_invoices(
    status: str | None = None,
    method: str | None = None,
) -> list[dict[str, Any]]:
    """Return stored invoices, optionally filtered by status and method."""
    with _locked():
        entries = _load()
    if status:
        entries = [e for e in entries if e.get("status", STATUS_NOT_REQUIRED) == status]
    if method:
        entries = [e for e in entries if e.get("method") == method]
    return entries


def pending_ids() -> list[str]:
    return [str(e["id"]) for e in list_invoices(status=STATUS_NOT_REQUIRED)]


def get_invoice(invoice_id: str) -> dict[str, Any]:
    with _locked():
        entry = _find(_load(), invoice_id)
    if entry is None:
        raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
    return entry


def add_invoice(record: dict[str, Any]) -> dict[str, Any]:
    """Store a new invoice record. An existing id is kept as is and returned."""
    if not record.get("id"):
        raise ValueError("Invoice record needs an 'id'")
    with _locked():
        entries = _load()
        existing = _find(entries, record["id"])
        if existing is not None:
            return existing
        entry = {"status": STATUS_NOT_REQUIRED, "method": None, **record}
        entry["id"] = str(entry["id"])
        entry.setdefault("created_at", _now_iso())
        entries.append(entry)
        _save(entries)
        return entry


def remove_invoice(invoice_id: str) -> bool:
    """Delete a record. Fiscalized invoices are permanent."""
    with _locked():
        entries = _load()
        target = _find(entries, invoice_id)
        if target is None:
            return False
        if target.get("status") == STATUS_FISCALIZED:
            raise AlreadyFiscalizedError(f"Invoice {invoice_id} is fiscalized and cannot be deleted")
        entries.remove(target)
        _save(entries)
        return True


def begin_submission(invoice_id: str, method: str) -> dict[str, Any]:
    """Compare-and-set the record into ``fiscalizing``.

    Allowed from not_required, error and too_old, or from a stale
    fiscalizing left behind by a crashed process.
    """
    with _locked():
        entries = _load()
        target = _find(entries, invoice_id)
        if target is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")

        status = target.get("status", STATUS_NOT_REQUIRED)
        if status == STATUS_FISCALIZED:
            raise AlreadyFiscalizedError(f"Invoice {target.get('number', invoice_id)} is already fiscalized")
        if status == STATUS_FISCALIZING and not _is_stale(target):
            raise SubmissionInProgressError(f"Invoice {invoice_id} is already being fiscalized")
        if status == STATUS_FISCALIZING:
            logger.warning("Taking over stale submission for invoice %s", invoice_id)
        elif status not in _SUBMITTABLE:
            logger.warning("Invoice %s has unknown status %r, resubmitting", invoice_id, status)

        now = _now_iso()
        target["status"] = STATUS_FISCALIZING
        target["method"] = method
        target["fiscalizing_since"] = now
        target["updated_at"] = now
        _save(entries)
        return dict(target)


def _is_stale(entry: dict[str, Any]) -> bool:
    since = entry.get("fiscalizing_since")
    if not since:
        return True
    try:
        started = datetime.fromisoformat(since)
    except ValueError:
        return True
    if started.tzinfo is None:
        started = started.replace(tzinfo=UTC)
    return datetime.now(UTC) - started > STALE_SUBMISSION_AFTER


def _apply(target: dict[str, Any], fields: dict[str, Any]) -> None:
    target.update(fields)
    target.pop("fiscalizing_since", None)
    target["updated_at"] = _now_iso()


def save_outcome(invoice_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Persist the outcome fields of one attempt in a single write."""
    with _locked():
        entries = _load()
        target = _find(entries, invoice_id)
        if target is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
        _apply(target, fields)
        _save(entries)
        return dict(target)


def update_many(updates: dict[str, dict[str, Any]]) -> int:
    """Apply several records' field updates in one write; returns how many matched."""
    if not updates:
        return 0
    with _locked():
        entries = _load()
        changed = 0
        for invoice_id, fields in updates.items():
            target = _find(entries, invoice_id)
            if target is None:
                logger.warning("Skipping update for unknown invoice %s", invoice_id)
                continue
            _apply(target, fields)
            changed += 1
        if changed:
            _save(entries)
        return changed
