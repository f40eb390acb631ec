from __future__ import annotations

import dataclasses
from unittest.mock import MagicMock, patch

import pytest
import requests.exceptions
from lxml import etree

from fiskal.config import FINA_NS
from fiskal.models.issuer import Issuer
from fiskal.services import fina
from fiskal.services.exceptions import ConfigurationError, ProtocolError, TransportError
from fiskal.services.transport import TransportConfig
from fiskal.utils.zki import zki_for_invoice

NS = {"t": FINA_NS}
JIR = "6e3bc6b1-2a7e-4f0d-9e55-7a4b3f1a4a7c"

_OK = f"""<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>
<tns:RacunOdgovor xmlns:tns="{FINA_NS}"><tns:Jir>{JIR}</tns:Jir></tns:RacunOdgovor>
</soap:Body></soap:Envelope>"""

_GRESKA = f"""<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>
<tns:RacunOdgovor xmlns:tns="{FINA_NS}"><tns:Greske><tns:Greska>
<tns:SifraGreske>s005</tns:SifraGreske><tns:PorukaGreske>Neispravan OIB</tns:PorukaGreske>
</tns:Greska></tns:Greske></tns:RacunOdgovor></soap:Body></soap:Envelope>"""


def _mock_response(ok: bool = True, status_code: int = 200, text: str = _OK):
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status_code
    resp.text = text
    return resp


def _posted(mock_post, call: int = -1) -> etree._Element:
    return etree.fromstring(mock_post.call_args_list[call].kwargs["data"])


def _no_sleep(_):
    return None


class TestFiscalize:
    @patch("fiskal.services.cis_client.post")
    def test_success(self, mock_post, snapshot, fina_issuer, data_dir):
        mock_post.return_value = _mock_response()
        result = fina.fiscalize(snapshot, fina_issuer, TransportConfig(), sleep_func=_no_sleep)

        assert result.success
        assert result.jir == JIR
        assert result.method == "fina"
        assert result.zki == zki_for_invoice(snapshot, fina_issuer)
        assert result.submitted_at

        sent = _posted(mock_post)
        assert sent.findtext(".//t:ZastKod", namespaces=NS) == result.zki
        assert mock_post.call_args.args[0].startswith("https://cistest.apis-it.hr")

        kinds = sorted(p.name.rsplit("_", 1)[1] for p in (data_dir / "archive" / "fina").iterdir())
        assert kinds == ["request.xml", "response.xml"]

    @patch("fiskal.services.cis_client.post")
    def test_missing_certificate_sends_nothing(self, mock_post, snapshot, issuer, data_dir):
        with pytest.raises(ConfigurationError, match="not found"):
            fina.fiscalize(snapshot, issuer, TransportConfig(), sleep_func=_no_sleep)
        mock_post.assert_not_called()

    @patch("fiskal.services.cis_client.post")
    def test_disabled(self, mock_post, snapshot, fina_issuer):
        issuer = dataclasses.replace(fina_issuer, fina_enabled=False)
        with pytest.raises(ConfigurationError, match="not enabled"):
            fina.fiscalize(snapshot, issuer, TransportConfig(), sleep_func=_no_sleep)
        mock_post.assert_not_called()

    @patch("fiskal.services.cis_client.post")
    def test_missing_password(self, mock_post, snapshot, fina_issuer):
        issuer = dataclasses.replace(fina_issuer, cert_password=None)
        with pytest.raises(ConfigurationError, match="password"):
            fina.fiscalize(snapshot, issuer, TransportConfig(), sleep_func=_no_sleep)
        mock_post.assert_not_called()

    @patch("fiskal.services.cis_client.post")
    def test_retry_uses_fresh_message_id(self, mock_post, snapshot, fina_issuer, data_dir, refused_error):
        mock_post.side_effect = [refused_error, _mock_response()]
        result = fina.fiscalize(snapshot, fina_issuer, TransportConfig(), sleep_func=_no_sleep)

        assert result.jir == JIR
        assert mock_post.call_count == 2
        ids = [_posted(mock_post, i).findtext(".//t:IdPoruke", namespaces=NS) for i in range(2)]
        assert ids[0] != ids[1]

    @patch("fiskal.services.cis_client.post")
    def test_aborted_connection_not_resent(self, mock_post, snapshot, fina_issuer, data_dir, aborted_error):
        mock_post.side_effect = [aborted_error, _mock_response()]
        with pytest.raises(TransportError, match="Network error"):
            fina.fiscalize(snapshot, fina_issuer, TransportConfig(), sleep_func=_no_sleep)
        assert mock_post.call_count == 1

    @patch("fiskal.services.cis_client.post")
    def test_read_timeout_not_retried(self, mock_post, snapshot, fina_issuer, data_dir):
        mock_post.side_effect = requests.exceptions.ReadTimeout("timed out")
        with pytest.raises(TransportError, match="Network error"):
            fina.fiscalize(snapshot, fina_issuer, TransportConfig(), sleep_func=_no_sleep)
        assert mock_post.call_count == 1

    @patch("fiskal.services.cis_client.post")
    def test_http_error(self, mock_post, snapshot, fina_issuer, data_dir):
        mock_post.return_value = _mock_response(ok=False, status_code=503, text="Service Unavailable")
        with pytest.raises(TransportError, match="503"):
            fina.fiscalize(snapshot, fina_issuer, TransportConfig(), sleep_func=_no_sleep)

    @patch("fiskal.services.cis_client.post")
    def test_authority_error(self, mock_post, snapshot, fina_issuer, data_dir):
        mock_post.return_value = _mock_response(text=_GRESKA)
        with pytest.raises(ProtocolError, match="s005") as exc_info:
            fina.fiscalize(snapshot, fina_issuer, TransportConfig(), sleep_func=_no_sleep)
        assert exc_info.value.raw_response == _GRESKA

    @patch("fiskal.services.cis_client.post")
    def test_transport_settings_passed(self, mock_post, snapshot, fina_issuer, data_dir):
        mock_post.return_value = _mock_response()
        fina.fiscalize(snapshot, fina_issuer, TransportConfig(verify=False, cis_timeout=3), sleep_func=_no_sleep)
        assert mock_post.call_args.kwargs["verify"] is False
        assert mock_post.call_args.kwargs["timeout"] == 3


class TestFiscalOib:
    def test_from_certificate(self, tmp_path, issuer_dict, oib_key_and_cert, write_pfx, snapshot):
        key, cert = oib_key_and_cert
        issuer_dict["fina"].update(cert_path=write_pfx(tmp_path / "oib.p12", key, cert), cert_password="testpass")
        prepared = fina.prepare(snapshot, Issuer.from_dict(issuer_dict))
        assert prepared.oib == "11111111119"
        assert prepared.signed.findtext("t:Racun/t:Oib", namespaces=NS) == "11111111119"
        assert prepared.zki == zki_for_invoice(snapshot, Issuer.from_dict(issuer_dict), "11111111119")

    def test_configured_oib_wins(self, oib_key_and_cert, issuer):
        issuer = dataclasses.replace(issuer, fiscal_oib="22222222228")
        assert fina.resolve_fiscal_oib(issuer, oib_key_and_cert[1]) == "22222222228"

    def test_falls_back_to_issuer(self, test_key_and_cert, issuer):
        assert fina.resolve_fiscal_oib(issuer, test_key_and_cert[1]) == issuer.oib


def test_prepare_signs(snapshot, fina_issuer):
    prepared = fina.prepare(snapshot, fina_issuer)
    assert etree.QName(prepared.signed[-1]).localname == "Signature"
    assert prepared.signed_xml.startswith(b"<?xml")
    assert b"Envelope" in prepared.envelope
