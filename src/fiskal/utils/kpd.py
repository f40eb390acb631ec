"""KPD 2025 classification for utility invoice lines.

Every UBL line sent through moj-eRačun needs a KPD code. Descriptions are
matched against an ordered keyword table; the first hit wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

logger = logging.getLogger(__name__)

REDUCED_RATE = Decimal("5.00")
STANDARD_RATE = Decimal("25.00")


@dataclass(frozen=True)
class KpdCategory:
    name: str
    code: str
    rate: Decimal
    keywords: tuple[str, ...]


# Order matters: "topla voda" must be seen before plain "voda", and within a
# category longer phrases come first.
KPD_TABLE: tuple[KpdCategory, ...] = (
    KpdCategory(
        "heating",
        "35.30.11",
        REDUCED_RATE,
        ("centralno grijanje", "grijanje prostora", "topla voda", "toplinska", "grijanje"),
    ),
    KpdCategory(
        "electricity",
        "35.11.10",
        REDUCED_RATE,
        ("električna energija", "el. energija", "elektrika", "struja"),
    ),
    KpdCategory("gas", "35.21.10", REDUCED_RATE, ("prirodni plin", "plinski", "plin")),
    KpdCategory(
        "water",
        "36.00.20",
        REDUCED_RATE,
        ("potrošnja vode", "pitka voda", "vodovod", "voda"),
    ),
    KpdCategory(
        "waste",
        "38.11.11",
        STANDARD_RATE,
        ("komunalni otpad", "odvoz smeća", "otpad", "smeće"),
    ),
    KpdCategory(
        "maintenance",
        "43.99.90",
        STANDARD_RATE,
        ("održavanje", "popravak", "servis", "naknada", "usluga"),
    ),
)

DEFAULT_KPD_CODE = "35.30.11"
DEFAULT_TAX_RATE = REDUCED_RATE


def resolve(description: str | None) -> tuple[str, Decimal]:
    """Return (kpd_code, default_tax_rate) for a line description."""
    text = (description or "").strip().lower()
    if text:
        for category in KPD_TABLE:
            for keyword in category.keywords:
                if keyword in text:
                    logger.debug("KPD %s (%s) for %r via %r", category.code, category.name, text, keyword)
                    return category.code, category.rate
    return DEFAULT_KPD_CODE, DEFAULT_TAX_RATE


def kpd_code_for(description: str | None) -> str:
    return resolve(description)[0]


def default_tax_rate_for(description: str | None) -> Decimal:
    return resolve(description)[1]


def tax_category_code(rate: object) -> str:
    """UNCL5305 category: ``Z`` for zero-rated, ``S`` for everything else."""
    try:
        value = Decimal(str(rate))
    except ArithmeticError:
        return "S"
    return "Z" if value == 0 else "S"
