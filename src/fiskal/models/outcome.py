from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

STATUS_NOT_REQUIRED = "not_required"
STATUS_FISCALIZING = "fiscalizing"
STATUS_FISCALIZED = "fiscalized"
STATUS_ERROR = "error"
STATUS_TOO_OLD = "too_old"

METHOD_FINA = "fina"
METHOD_ERACUN = "moje-racun"
METHODS = (METHOD_FINA, METHOD_ERACUN)


@dataclass(frozen=True)
class FiscalResult:
    """Outcome of one fiscalization attempt, as returned to callers and persisted."""

    invoice_id: str
    status: str
    method: str | None
    message: str
    invoice_number: str | None = None
    jir: str | None = None
    zki: str | None = None
    electronic_id: str | None = None
    remote_status: str | None = None
    raw_response: str | None = None
    submitted_at: str | None = None

    @property
    def success(self) -> bool:
        return self.status == STATUS_FISCALIZED

    def to_fiscal_fields(self) -> dict[str, Any]:
        """Fields written onto the invoice record.

        FINA results carry jir/zki, moj-eRačun results carry the electronic id;
        the other protocol's fields are cleared so a record never mixes both.
        """
        fields: dict[str, Any] = {
            "status": self.status,
            "method": self.method,
            "message": self.message,
        }
        if self.status != STATUS_FISCALIZED:
            fields["error"] = self.message
            if self.raw_response:
                fields["raw_response"] = self.raw_response[:2000]
            return fields

        fields["error"] = None
        fields["raw_response"] = None
        fields["submitted_at"] = self.submitted_at
        if self.method == METHOD_FINA:
            fields.update(jir=self.jir, zki=self.zki, electronic_id=None, remote_status=None)
        else:
            fields.update(
                jir=None,
                zki=None,
                electronic_id=self.electronic_id,
                remote_status=self.remote_status,
            )
        return fields


@dataclass
class BatchSummary:
    total: int = 0
    success_count: int = 0
    error_count: int = 0
    too_old_count: int = 0
    skipped_count: int = 0
    results: list[FiscalResult] = field(default_factory=list)

    def add(self, result: FiscalResult, skipped: bool = False) -> None:
        self.total += 1
        self.results.append(result)
        if skipped:
            self.skipped_count += 1
        elif result.success:
            self.success_count += 1
        elif result.status == STATUS_TOO_OLD:
            self.too_old_count += 1
        else:
            self.error_count += 1


@dataclass
class ReconcileSummary:
    checked: int = 0
    updated: int = 0
    changes: dict[str, tuple[str | None, str]] = field(default_factory=dict)
