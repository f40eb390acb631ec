from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fiskal.config import ZAGREB
from fiskal.services.exceptions import ValidationError
from fiskal.utils.formatters import round_money, to_decimal
from fiskal.utils.kpd import DEFAULT_TAX_RATE
from fiskal.utils.validators import is_valid_oib

logger = logging.getLogger(__name__)

_TOLERANCE = Decimal("0.01")
_HUNDRED = Decimal("100")


def parse_local_datetime(value: object) -> datetime:
    """Parse an ISO timestamp as naive Europe/Zagreb wall-clock time."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is not None:
        dt = dt.astimezone(ZAGREB).replace(tzinfo=None)
    return dt


def snap_tax_rate(rate: Decimal) -> Decimal:
    """Nearest Croatian VAT rate (0, 5, 13, 25) to a ratio-derived percentage."""
    if rate <= Decimal("2.5"):
        return Decimal("0.00")
    if rate <= Decimal("7.5"):
        return Decimal("5.00")
    if rate <= Decimal("19"):
        return Decimal("13.00")
    return Decimal("25.00")


@dataclass(frozen=True)
class Buyer:
    name: str
    street: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country: str = "HR"
    oib: str | None = None

    @property
    def has_valid_oib(self) -> bool:
        return is_valid_oib(self.oib)

    @classmethod
    def from_dict(cls, d: dict) -> Buyer:
        oib = d.get("oib")
        return cls(
            name=d.get("name") or "",
            street=d.get("street") or None,
            city=d.get("city") or None,
            postal_code=str(d["postal_code"]) if d.get("postal_code") else None,
            country=d.get("country") or "HR",
            oib=str(oib).strip() if oib else None,
        )


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    unit: str = "kom"
    kpd_code: str | None = None
    tax_rate: Decimal | None = None
    tax_category: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> LineItem:
        quantity = to_decimal(d.get("quantity", "1"))
        unit_price = to_decimal(d.get("unit_price", "0"))
        amount = d.get("amount")
        return cls(
            description=d.get("description") or "",
            quantity=quantity,
            unit_price=unit_price,
            amount=round_money(amount) if amount not in (None, "") else round_money(quantity * unit_price),
            unit=d.get("unit") or "kom",
            kpd_code=d.get("kpd_code") or None,
            tax_rate=to_decimal(d["tax_rate"]) if d.get("tax_rate") not in (None, "") else None,
            tax_category=d.get("tax_category") or None,
        )


@dataclass(frozen=True)
class InvoiceSnapshot:
    """Read-only view of one invoice at the moment it is handed to a protocol."""

    invoice_id: str
    number: str
    issued_at: datetime
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    tax_rate: Decimal
    buyer: Buyer
    items: tuple[LineItem, ...] = ()
    due_at: date | None = None
    payment_method: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> InvoiceSnapshot:
        """Build a snapshot from a stored invoice, reconciling subtotal + tax = total.

        Raises ValidationError when the record cannot be interpreted.
        """
        invoice_id = str(record.get("id", ""))
        try:
            return cls._from_record(invoice_id, record)
        except ValidationError:
            raise
        except (ArithmeticError, ValueError, KeyError, TypeError) as exc:
            raise ValidationError(f"Invoice {invoice_id}: invalid data ({type(exc).__name__}: {exc})") from exc

    @classmethod
    def _from_record(cls, invoice_id: str, record: dict[str, Any]) -> InvoiceSnapshot:
        items = tuple(LineItem.from_dict(i) for i in record.get("items") or ())
        subtotal = round_money(record.get("subtotal", sum((i.amount for i in items), Decimal("0"))))
        tax = round_money(record.get("tax_amount", "0"))
        total = round_money(record["total"]) if record.get("total") not in (None, "") else subtotal + tax

        rate = _resolve_rate(record.get("tax_rate"), items, subtotal, tax)
        subtotal, tax = _reconcile(invoice_id, subtotal, tax, total, rate)

        due = record.get("due_at")
        return cls(
            invoice_id=invoice_id,
            number=str(record.get("number") or invoice_id),
            issued_at=parse_local_datetime(record["issued_at"]),
            subtotal=subtotal,
            tax_amount=tax,
            total=total,
            tax_rate=rate,
            buyer=Buyer.from_dict(record.get("buyer") or {}),
            items=items,
            due_at=parse_local_datetime(due).date() if due else None,
            payment_method=record.get("payment_method") or None,
        )


def _resolve_rate(raw: object, items: tuple[LineItem, ...], subtotal: Decimal, tax: Decimal) -> Decimal:
    if raw not in (None, ""):
        return round_money(raw)
    rates = {i.tax_rate for i in items if i.tax_rate is not None}
    if len(rates) == 1:
        return round_money(rates.pop())
    if subtotal > 0:
        return snap_tax_rate(tax / subtotal * _HUNDRED)
    return DEFAULT_TAX_RATE


def _reconcile(
    invoice_id: str,
    subtotal: Decimal,
    tax: Decimal,
    total: Decimal,
    rate: Decimal,
) -> tuple[Decimal, Decimal]:
    drift = subtotal + tax - total
    if drift == 0:
        return subtotal, tax
    if abs(drift) <= _TOLERANCE:
        # one-cent rounding residue goes to the tax amount
        return subtotal, total - subtotal
    new_subtotal = round_money(total / (1 + rate / _HUNDRED))
    logger.warning(
        "Invoice %s: subtotal %s + tax %s != total %s, recomputed at %s%% as %s + %s",
        invoice_id,
        subtotal,
        tax,
        total,
        rate,
        new_subtotal,
        total - new_subtotal,
    )
    return new_subtotal, total - new_subtotal
