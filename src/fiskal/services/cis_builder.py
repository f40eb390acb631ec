from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from lxml import etree

from fiskal.config import FINA_NS, ZAGREB
from fiskal.models.invoice import InvoiceSnapshot
from fiskal.models.issuer import Issuer
from fiskal.utils.formatters import format_amount, format_cis_datetime, format_rate, round_money
from fiskal.utils.validators import is_valid_oib
from fiskal.utils.zki import extract_sequence_number

NSMAP = {"tns": FINA_NS}
SIGN_ID = "signXmlId"

DEFAULT_PAYMENT_METHOD = "G"  # gotovina
SEQUENCE_MARK = "P"  # sequence kept per business premise


def _q(tag: str) -> str:
    return f"{{{FINA_NS}}}{tag}"


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, _q(tag))
    if text is not None:
        el.text = text
    return el


def tax_buckets(snapshot: InvoiceSnapshot) -> list[tuple[Decimal, Decimal, Decimal]]:
    """(rate, base, tax) triples for the Pdv block, highest rate first.

    A single rate keeps the invoice's own subtotal/tax so the block always
    matches the stored totals; per-rate buckets are computed from line amounts.
    """
    bases: dict[Decimal, Decimal] = defaultdict(Decimal)
    for item in snapshot.items:
        rate = item.tax_rate if item.tax_rate is not None else snapshot.tax_rate
        bases[round_money(rate)] += item.amount

    if len(bases) <= 1:
        return [(snapshot.tax_rate, snapshot.subtotal, snapshot.tax_amount)]

    return [
        (rate, round_money(base), round_money(base * rate / 100))
        for rate, base in sorted(bases.items(), reverse=True)
    ]


def build_request(
    snapshot: InvoiceSnapshot,
    issuer: Issuer,
    oib: str,
    zki: str,
    *,
    now: datetime | None = None,
    message_id: str | None = None,
) -> etree._Element:
    """Build an unsigned ``RacunZahtjev`` for one invoice.

    Every call gets a new message id unless one is passed in, so retries
    never reuse an IdPoruke.
    """
    now = now or datetime.now(ZAGREB).replace(tzinfo=None)

    root = etree.Element(_q("RacunZahtjev"), nsmap=NSMAP)
    root.set("Id", SIGN_ID)

    header = _sub(root, "Zaglavlje")
    _sub(header, "IdPoruke", message_id or str(uuid.uuid4()))
    _sub(header, "DatumVrijeme", format_cis_datetime(now))

    racun = _sub(root, "Racun")
    _sub(racun, "Oib", oib)
    _sub(racun, "USustPdv", "true" if issuer.in_vat_system else "false")
    _sub(racun, "DatVrijeme", format_cis_datetime(snapshot.issued_at))
    _sub(racun, "OznSlijed", SEQUENCE_MARK)

    br_rac = _sub(racun, "BrRac")
    _sub(br_rac, "BrOznRac", extract_sequence_number(snapshot.number))
    _sub(br_rac, "OznPosPr", issuer.business_premise)
    _sub(br_rac, "OznNapUr", issuer.register_device)

    pdv = _sub(racun, "Pdv")
    for rate, base, amount in tax_buckets(snapshot):
        porez = _sub(pdv, "Porez")
        _sub(porez, "Stopa", format_rate(rate))
        _sub(porez, "Osnovica", format_amount(base))
        _sub(porez, "Iznos", format_amount(amount))

    _sub(racun, "IznosUkupno", format_amount(snapshot.total))
    _sub(racun, "NacinPlac", snapshot.payment_method or DEFAULT_PAYMENT_METHOD)
    _sub(racun, "OibOper", issuer.operator_oib or oib)
    if is_valid_oib(snapshot.buyer.oib):
        _sub(racun, "OibKupca", snapshot.buyer.oib)
    _sub(racun, "ZastKod", zki)
    _sub(racun, "NakDost", "false")

    return root
