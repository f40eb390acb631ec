"""Zaštitni kod izdavatelja (ZKI).

The issuer's security code is an MD5 digest over six invoice fields. The
authority re-derives it, so the input format is fixed:

    oib + dd.MM.yyyyTHH:mm:ss + sequence + premise + register + total(2 dp)
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import TYPE_CHECKING

from fiskal.utils.formatters import format_amount, format_cis_datetime

if TYPE_CHECKING:
    from fiskal.models.invoice import InvoiceSnapshot
    from fiskal.models.issuer import Issuer

DEFAULT_BUSINESS_PREMISE = "01"
DEFAULT_REGISTER_DEVICE = "1"


def extract_sequence_number(invoice_number: str | None) -> str:
    """Return the leading sequence part of ``1/POS1/1`` or ``1-POS1-1``.

    Numbers without a separator are used whole; an empty number yields "1".
    """
    number = (invoice_number or "").strip()
    if not number:
        return "1"
    for sep in ("/", "-"):
        if sep in number:
            head = number.split(sep, 1)[0].strip()
            return head or number
    return number


def generate_zki(
    oib: str,
    issued_at: datetime,
    invoice_number: str | None,
    business_premise: str | None,
    register_device: str | None,
    total: object,
) -> str:
    """Compute the ZKI as 32 lowercase hex characters."""
    payload = "".join(
        (
            oib or "",
            format_cis_datetime(issued_at),
            extract_sequence_number(invoice_number),
            business_premise or DEFAULT_BUSINESS_PREMISE,
            register_device or DEFAULT_REGISTER_DEVICE,
            format_amount(total),
        )
    )
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def zki_for_invoice(snapshot: InvoiceSnapshot, issuer: Issuer, oib: str | None = None) -> str:
    return generate_zki(
        oib or issuer.effective_fiscal_oib,
        snapshot.issued_at,
        snapshot.number,
        issuer.business_premise,
        issuer.register_device,
        snapshot.total,
    )
