"""UBL 2.1 invoice for moj-eRačun, following the HR CIUS 2025 profile.

The document is not signed; the REST call's credentials authenticate it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

from lxml import etree

from fiskal.config import UBL_CAC_NS, UBL_CBC_NS, UBL_INVOICE_NS, XSI_NS, ZAGREB
from fiskal.models.invoice import Buyer, InvoiceSnapshot
from fiskal.models.issuer import Issuer
from fiskal.services.exceptions import ValidationError
from fiskal.utils import kpd
from fiskal.utils.formatters import (
    format_amount,
    format_iso_date,
    format_percent,
    format_price,
    format_quantity,
    format_rate,
)

logger = logging.getLogger(__name__)

NSMAP = {None: UBL_INVOICE_NS, "cac": UBL_CAC_NS, "cbc": UBL_CBC_NS, "xsi": XSI_NS}

CUSTOMIZATION_ID = (
    "urn:cen.eu:en16931:2017#compliant#urn:mfin.gov.hr:cius-2025:1.0"
    "#conformant#urn:mfin.gov.hr:ext-2025:1.0"
)
PROFILE_ID = "P3"
INVOICE_TYPE_CODE = "380"  # commercial invoice
CURRENCY = "EUR"
OIB_SCHEME = "9934"
CREDIT_TRANSFER = "30"
PAYMENT_NOTE = "Plaćanje po računu"
OPERATOR_NAME = "OPERATER"
DEFAULT_PAYMENT_TERM = timedelta(days=30)

# Documented moj-eRačun demo recipient, used only outside production
TEST_BUYER_OIB = "29524210204"
TEST_BUYER_NAME = "A1 HRVATSKA D.O.O."

PLACEHOLDER_STREET = "VRTNI PUT 1"
PLACEHOLDER_CITY = "ZAGREB"
PLACEHOLDER_POSTAL = "10000"

UNIT_CODES = {
    "kom": "EA",
    "pcs": "EA",
    "kg": "KGM",
    "m2": "MTK",
    "m²": "MTK",
    "m3": "MTQ",
    "m³": "MTQ",
    "l": "LTR",
    "lit": "LTR",
    "kwh": "KWH",
    "h": "HUR",
    "sat": "HUR",
    "mj": "MON",
    "mjesec": "MON",
}
DEFAULT_UNIT_CODE = "EA"


def unit_code(unit: str | None) -> str:
    return UNIT_CODES.get((unit or "").strip().lower(), DEFAULT_UNIT_CODE)


def _cac(parent: etree._Element, tag: str) -> etree._Element:
    return etree.SubElement(parent, f"{{{UBL_CAC_NS}}}{tag}")


def _cbc(parent: etree._Element, tag: str, text: str, **attrs: str) -> etree._Element:
    el = etree.SubElement(parent, f"{{{UBL_CBC_NS}}}{tag}", **attrs)
    el.text = text
    return el


def _money(parent: etree._Element, tag: str, value: Decimal) -> etree._Element:
    return _cbc(parent, tag, format_amount(value), currencyID=CURRENCY)


def _tax_scheme(parent: etree._Element) -> None:
    _cbc(_cac(parent, "TaxScheme"), "ID", "VAT")


def _address(parent: etree._Element, street: str | None, city: str | None, postal: str | None, country: str) -> None:
    addr = _cac(parent, "PostalAddress")
    _cbc(addr, "StreetName", street or PLACEHOLDER_STREET)
    _cbc(addr, "CityName", city or PLACEHOLDER_CITY)
    _cbc(addr, "PostalZone", postal or PLACEHOLDER_POSTAL)
    _cbc(_cac(addr, "Country"), "IdentificationCode", country or "HR")


def _party(
    parent: etree._Element,
    oib: str,
    name: str,
    street: str | None,
    city: str | None,
    postal: str | None,
    country: str,
) -> etree._Element:
    party = _cac(parent, "Party")
    _cbc(party, "EndpointID", oib, schemeID=OIB_SCHEME)
    _cbc(_cac(party, "PartyIdentification"), "ID", f"{OIB_SCHEME}:{oib}")
    _address(party, street, city, postal, country)
    tax = _cac(party, "PartyTaxScheme")
    _cbc(tax, "CompanyID", f"{country or 'HR'}{oib}")
    _tax_scheme(tax)
    legal = _cac(party, "PartyLegalEntity")
    _cbc(legal, "RegistrationName", name)
    _cbc(legal, "CompanyID", oib)
    return party


def resolve_buyer(snapshot: InvoiceSnapshot, production: bool) -> tuple[str, str]:
    """Buyer (oib, name) for the document.

    Production refuses an invoice without a valid buyer OIB or name; elsewhere
    the demo recipient replaces a buyer whose OIB is unusable.
    """
    buyer: Buyer = snapshot.buyer
    if buyer.has_valid_oib:
        if production and not buyer.name.strip():
            raise ValidationError(
                f"Invoice {snapshot.number}: buyer {buyer.oib} has no name; "
                "correct the buyer before sending to moj-eRačun"
            )
        return buyer.oib, buyer.name  # type: ignore[return-value]
    if production:
        raise ValidationError(
            f"Invoice {snapshot.number}: buyer '{buyer.name}' has no valid 11-digit OIB "
            f"({buyer.oib or 'missing'}); correct the buyer before sending to moj-eRačun"
        )
    logger.warning(
        "Invoice %s: buyer OIB %r invalid, using test buyer %s (%s)",
        snapshot.number,
        buyer.oib,
        TEST_BUYER_OIB,
        TEST_BUYER_NAME,
    )
    return TEST_BUYER_OIB, TEST_BUYER_NAME


def document_tax(snapshot: InvoiceSnapshot) -> tuple[Decimal, str]:
    """(rate, category) for the single TaxSubtotal."""
    for item in snapshot.items:
        if item.tax_rate is not None:
            return item.tax_rate, item.tax_category or kpd.tax_category_code(item.tax_rate)
    if snapshot.subtotal > 0:
        rate = Decimal(format_percent(snapshot.tax_amount / snapshot.subtotal * 100))
    else:
        rate = kpd.DEFAULT_TAX_RATE
    return rate, kpd.tax_category_code(rate)


def _dates(snapshot: InvoiceSnapshot, now: datetime) -> tuple[date, str, date]:
    issue = snapshot.issued_at
    if issue > now:
        logger.warning("Invoice %s: issue date %s is in the future, using now", snapshot.number, issue)
        issue = now
    issue_date = issue.date()
    due = snapshot.due_at
    if due is None or due < issue_date:
        due = issue_date + DEFAULT_PAYMENT_TERM
    return issue_date, issue.strftime("%H:%M:%S"), due


def build_invoice(snapshot: InvoiceSnapshot, issuer: Issuer, *, now: datetime | None = None) -> str:
    """Serialize *snapshot* as a UBL 2.1 Invoice string.

    Raises ValidationError for a production invoice without a valid buyer
    OIB and for totals that do not add up.
    """
    if snapshot.subtotal + snapshot.tax_amount != snapshot.total:
        raise ValidationError(
            f"Invoice {snapshot.number}: subtotal {snapshot.subtotal} + tax {snapshot.tax_amount} "
            f"!= total {snapshot.total}"
        )
    buyer_oib, buyer_name = resolve_buyer(snapshot, issuer.eracun_production)
    now = now or datetime.now(ZAGREB).replace(tzinfo=None)
    issue_date, issue_time, due_date = _dates(snapshot, now)
    rate, category = document_tax(snapshot)

    root = etree.Element(f"{{{UBL_INVOICE_NS}}}Invoice", nsmap=NSMAP)  # type: ignore[arg-type]
    _cbc(root, "CustomizationID", CUSTOMIZATION_ID)
    _cbc(root, "ProfileID", PROFILE_ID)
    _cbc(root, "ID", snapshot.number)
    _cbc(root, "CopyIndicator", "false")
    _cbc(root, "IssueDate", format_iso_date(issue_date))
    _cbc(root, "IssueTime", issue_time)
    _cbc(root, "DueDate", format_iso_date(due_date))
    _cbc(root, "InvoiceTypeCode", INVOICE_TYPE_CODE)
    _cbc(root, "DocumentCurrencyCode", CURRENCY)

    supplier = _cac(root, "AccountingSupplierParty")
    _party(supplier, issuer.oib, issuer.name, issuer.street, issuer.city, issuer.postal_code, issuer.country)
    contact = _cac(supplier, "SellerContact")
    _cbc(contact, "ID", issuer.effective_operator_oib)
    _cbc(contact, "Name", OPERATOR_NAME)

    customer = _cac(root, "AccountingCustomerParty")
    b = snapshot.buyer
    _party(customer, buyer_oib, buyer_name, b.street, b.city, b.postal_code, b.country)

    _cbc(_cac(root, "Delivery"), "ActualDeliveryDate", format_iso_date(issue_date))

    payment = _cac(root, "PaymentMeans")
    _cbc(payment, "PaymentMeansCode", CREDIT_TRANSFER)
    _cbc(payment, "InstructionNote", PAYMENT_NOTE)
    if issuer.bank_account:
        _cbc(_cac(payment, "PayeeFinancialAccount"), "ID", issuer.bank_account.replace(" ", ""))

    tax_total = _cac(root, "TaxTotal")
    _money(tax_total, "TaxAmount", snapshot.tax_amount)
    subtotal = _cac(tax_total, "TaxSubtotal")
    _money(subtotal, "TaxableAmount", snapshot.subtotal)
    _money(subtotal, "TaxAmount", snapshot.tax_amount)
    tax_cat = _cac(subtotal, "TaxCategory")
    _cbc(tax_cat, "ID", category)
    _cbc(tax_cat, "Percent", format_rate(rate))
    _tax_scheme(tax_cat)

    totals = _cac(root, "LegalMonetaryTotal")
    _money(totals, "LineExtensionAmount", snapshot.subtotal)
    _money(totals, "TaxExclusiveAmount", snapshot.subtotal)
    _money(totals, "TaxInclusiveAmount", snapshot.total)
    _money(totals, "AllowanceTotalAmount", Decimal("0"))
    _money(totals, "ChargeTotalAmount", Decimal("0"))
    _money(totals, "PayableAmount", snapshot.total)

    for index, item in enumerate(snapshot.items, start=1):
        code = unit_code(item.unit)
        line = _cac(root, "InvoiceLine")
        _cbc(line, "ID", str(index))
        _cbc(line, "InvoicedQuantity", format_quantity(item.quantity), unitCode=code)
        _money(line, "LineExtensionAmount", item.amount)

        ubl_item = _cac(line, "Item")
        _cbc(ubl_item, "Name", item.description)
        classification = _cac(ubl_item, "CommodityClassification")
        _cbc(classification, "ItemClassificationCode", item.kpd_code or kpd.kpd_code_for(item.description), listID="CG")
        line_rate = item.tax_rate if item.tax_rate is not None else rate
        classified = _cac(ubl_item, "ClassifiedTaxCategory")
        _cbc(classified, "ID", item.tax_category or kpd.tax_category_code(line_rate))
        _cbc(classified, "Percent", format_rate(line_rate))
        _tax_scheme(classified)

        price = _cac(line, "Price")
        _cbc(price, "PriceAmount", format_price(item.unit_price), currencyID=CURRENCY)
        _cbc(price, "BaseQuantity", "1", unitCode=code)

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True).decode("utf-8")
