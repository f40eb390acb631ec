from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

OUTBOX_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


@dataclass(frozen=True)
class OutboxFilter:
    """Query for moj-eRačun's /queryOutbox. Unset fields are left out of the request."""

    electronic_id: int | None = None
    status_id: int | None = None
    invoice_year: int | None = None
    invoice_number: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ElectronicId": self.electronic_id,
            "StatusId": self.status_id,
            "InvoiceYear": self.invoice_year,
            "InvoiceNumber": self.invoice_number,
            "From": self.date_from.strftime(OUTBOX_DATE_FORMAT) if self.date_from else None,
            "To": self.date_to.strftime(OUTBOX_DATE_FORMAT) if self.date_to else None,
        }
        return {k: v for k, v in payload.items() if v is not None}


@dataclass(frozen=True)
class OutboxHeader:
    electronic_id: str
    document_nr: str | None = None
    document_type_id: int | None = None
    document_type_name: str | None = None
    status_id: int | None = None
    status_name: str | None = None
    recipient_business_number: str | None = None
    recipient_business_unit: str | None = None
    recipient_business_name: str | None = None
    created: datetime | None = None
    updated: datetime | None = None
    sent: datetime | None = None
    delivered: datetime | None = None
