"""Copies of every document sent to or received from the authorities."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path

from fiskal.config import get_archive_dir

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _target(method: str, invoice_id: str, kind: str, suffix: str) -> Path:
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
    name = f"{_UNSAFE.sub('_', str(invoice_id))}_{ts}_{kind}{suffix}"
    return get_archive_dir(method) / name


def write_document(method: str, invoice_id: str, kind: str, content: bytes | str, suffix: str = ".xml") -> Path:
    path = _target(method, invoice_id, kind, suffix)
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    return path


def archive(method: str, invoice_id: str, kind: str, content: bytes | str | None, suffix: str = ".xml") -> Path | None:
    """Best-effort write; a failure is logged and never aborts a submission."""
    if not content:
        return None
    try:
        return write_document(method, invoice_id, kind, content, suffix)
    except OSError:
        logger.warning("Failed to archive %s for invoice %s", kind, invoice_id, exc_info=True)
        return None
