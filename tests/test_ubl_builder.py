from __future__ import annotations

import dataclasses
from datetime import date, datetime

import pytest
from lxml import etree

from fiskal.config import UBL_CAC_NS, UBL_CBC_NS, UBL_INVOICE_NS
from fiskal.models.invoice import InvoiceSnapshot
from fiskal.services.exceptions import ValidationError
from fiskal.services.ubl_builder import (
    CUSTOMIZATION_ID,
    TEST_BUYER_NAME,
    TEST_BUYER_OIB,
    build_invoice,
    resolve_buyer,
    unit_code,
)

NS = {"inv": UBL_INVOICE_NS, "cac": UBL_CAC_NS, "cbc": UBL_CBC_NS}
NOW = datetime(2025, 10, 2, 12, 0, 0)


def _parse(xml: str) -> etree._Element:
    return etree.fromstring(xml.encode("utf-8"))


def _t(root, path):
    return root.findtext(path, namespaces=NS)


class TestBuildInvoice:
    def test_header(self, snapshot, issuer):
        root = _parse(build_invoice(snapshot, issuer, now=NOW))
        assert root.tag == f"{{{UBL_INVOICE_NS}}}Invoice"
        assert _t(root, "cbc:CustomizationID") == CUSTOMIZATION_ID
        assert _t(root, "cbc:ProfileID") == "P3"
        assert _t(root, "cbc:ID") == "7/POS1/2"
        assert _t(root, "cbc:IssueDate") == "2025-10-01"
        assert _t(root, "cbc:IssueTime") == "09:30:00"
        assert _t(root, "cbc:DueDate") == "2025-10-31"
        assert _t(root, "cbc:InvoiceTypeCode") == "380"
        assert _t(root, "cbc:DocumentCurrencyCode") == "EUR"

    def test_parties(self, snapshot, issuer):
        root = _parse(build_invoice(snapshot, issuer, now=NOW))
        supplier = root.find("cac:AccountingSupplierParty/cac:Party", NS)
        endpoint = supplier.find("cbc:EndpointID", NS)
        assert (endpoint.text, endpoint.get("schemeID")) == ("12345678903", "9934")
        assert _t(supplier, "cac:PartyIdentification/cbc:ID") == "9934:12345678903"
        assert _t(supplier, "cac:PartyTaxScheme/cbc:CompanyID") == "HR12345678903"
        assert _t(supplier, "cac:PartyLegalEntity/cbc:RegistrationName") == "TOPLANA D.O.O."
        assert _t(root, "cac:AccountingSupplierParty/cac:SellerContact/cbc:ID") == "98765432106"

        customer = root.find("cac:AccountingCustomerParty/cac:Party", NS)
        assert _t(customer, "cbc:EndpointID") == "69435151530"
        assert _t(customer, "cac:PostalAddress/cbc:StreetName") == "Vukovarska 10"

    def test_totals(self, snapshot, issuer):
        root = _parse(build_invoice(snapshot, issuer, now=NOW))
        assert _t(root, "cac:TaxTotal/cbc:TaxAmount") == "5.00"
        assert _t(root, "cac:TaxTotal/cac:TaxSubtotal/cbc:TaxableAmount") == "100.00"
        assert _t(root, "cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory/cbc:ID") == "S"
        assert _t(root, "cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory/cbc:Percent") == "5.00"
        assert _t(root, "cac:LegalMonetaryTotal/cbc:TaxInclusiveAmount") == "105.00"
        assert _t(root, "cac:LegalMonetaryTotal/cbc:PayableAmount") == "105.00"
        assert root.find("cac:TaxTotal/cbc:TaxAmount", NS).get("currencyID") == "EUR"

    def test_payment(self, snapshot, issuer):
        root = _parse(build_invoice(snapshot, issuer, now=NOW))
        assert _t(root, "cac:PaymentMeans/cbc:PaymentMeansCode") == "30"
        assert _t(root, "cac:PaymentMeans/cac:PayeeFinancialAccount/cbc:ID") == "HR1210010051863000160"

    def test_line(self, snapshot, issuer):
        line = _parse(build_invoice(snapshot, issuer, now=NOW)).find("cac:InvoiceLine", NS)
        qty = line.find("cbc:InvoicedQuantity", NS)
        assert (qty.text, qty.get("unitCode")) == ("800.000", "KWH")
        assert _t(line, "cbc:LineExtensionAmount") == "100.00"
        code = line.find("cac:Item/cac:CommodityClassification/cbc:ItemClassificationCode", NS)
        assert (code.text, code.get("listID")) == ("35.30.11", "CG")
        assert _t(line, "cac:Item/cac:ClassifiedTaxCategory/cbc:Percent") == "5.00"
        assert _t(line, "cac:Price/cbc:PriceAmount") == "0.125"
        assert _t(line, "cac:Price/cbc:BaseQuantity") == "1"

    def test_explicit_kpd_code_kept(self, make_record, issuer):
        rec = make_record()
        rec["items"][0]["kpd_code"] = "35.30.12"
        root = _parse(build_invoice(InvoiceSnapshot.from_record(rec), issuer, now=NOW))
        assert _t(root, ".//cbc:ItemClassificationCode") == "35.30.12"

    def test_special_characters_escaped(self, make_record, issuer):
        rec = make_record()
        rec["buyer"]["name"] = 'Kuća & "Vrt" <d.o.o.>'
        rec["items"][0]["description"] = "Grijanje <zima> & topla voda"
        xml = build_invoice(InvoiceSnapshot.from_record(rec), issuer, now=NOW)
        root = _parse(xml)
        assert "&amp;" in xml
        assert _t(root, ".//cac:AccountingCustomerParty//cbc:RegistrationName") == 'Kuća & "Vrt" <d.o.o.>'
        assert _t(root, ".//cac:Item/cbc:Name") == "Grijanje <zima> & topla voda"

    def test_future_issue_date_clamped(self, make_record, issuer):
        rec = make_record(issued_at="2025-12-24T08:00:00", due_at=None)
        root = _parse(build_invoice(InvoiceSnapshot.from_record(rec), issuer, now=NOW))
        assert _t(root, "cbc:IssueDate") == "2025-10-02"
        assert _t(root, "cbc:IssueTime") == "12:00:00"
        assert _t(root, "cbc:DueDate") == "2025-11-01"

    def test_due_before_issue_replaced(self, make_record, issuer):
        rec = make_record(due_at="2025-09-01")
        root = _parse(build_invoice(InvoiceSnapshot.from_record(rec), issuer, now=NOW))
        assert _t(root, "cbc:DueDate") == "2025-10-31"

    def test_totals_mismatch_rejected(self, snapshot, issuer):
        broken = dataclasses.replace(snapshot, total=snapshot.total + 1)
        with pytest.raises(ValidationError, match="total"):
            build_invoice(broken, issuer, now=NOW)


class TestBuyer:
    def test_invalid_oib_rejected_in_production(self, make_record, issuer):
        rec = make_record()
        rec["buyer"]["oib"] = "1234"
        prod = dataclasses.replace(issuer, eracun_environment="production")
        with pytest.raises(ValidationError, match="OIB"):
            build_invoice(InvoiceSnapshot.from_record(rec), prod, now=NOW)

    def test_test_buyer_substituted(self, make_record, issuer):
        rec = make_record()
        rec["buyer"]["oib"] = None
        root = _parse(build_invoice(InvoiceSnapshot.from_record(rec), issuer, now=NOW))
        assert _t(root, "cac:AccountingCustomerParty/cac:Party/cbc:EndpointID") == TEST_BUYER_OIB

    def test_blank_name_rejected_in_production(self, make_record, issuer):
        rec = make_record()
        rec["buyer"]["name"] = ""
        prod = dataclasses.replace(issuer, eracun_environment="production")
        with pytest.raises(ValidationError, match="no name"):
            build_invoice(InvoiceSnapshot.from_record(rec), prod, now=NOW)

    def test_blank_name_never_replaced_by_test_buyer(self, make_record):
        rec = make_record()
        rec["buyer"]["name"] = ""
        oib, name = resolve_buyer(InvoiceSnapshot.from_record(rec), production=False)
        assert (oib, name) == ("69435151530", "")
        assert name != TEST_BUYER_NAME

    def test_valid_buyer_kept(self, snapshot):
        assert resolve_buyer(snapshot, production=True) == ("69435151530", "Ivo Ivić")


@pytest.mark.parametrize(
    ("unit", "expected"),
    [("kom", "EA"), ("kWh", "KWH"), ("m³", "MTQ"), ("mj", "MON"), (None, "EA"), ("bale", "EA")],
)
def test_unit_code(unit, expected):
    assert unit_code(unit) == expected


def test_due_date_default_is_thirty_days(make_record, issuer):
    rec = make_record(due_at=None)
    snap = InvoiceSnapshot.from_record(rec)
    assert snap.due_at is None
    root = _parse(build_invoice(snap, issuer, now=NOW))
    assert date.fromisoformat(_t(root, "cbc:DueDate")) == date(2025, 10, 31)
