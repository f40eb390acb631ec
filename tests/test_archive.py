from __future__ import annotations

from unittest.mock import patch

from fiskal.services.archive import archive, write_document


def test_write_document_str(data_dir):
    path = write_document("fina", "7/POS1/2", "request", "<Račun/>")
    assert path.parent == data_dir / "archive" / "fina"
    assert path.name.startswith("7_POS1_2_")
    assert path.name.endswith("_request.xml")
    assert path.read_bytes() == "<Račun/>".encode()


def test_write_document_suffix(data_dir):
    path = write_document("moje-racun", "a", "response", b"{}", suffix=".json")
    assert path.suffix == ".json"
    assert path.read_bytes() == b"{}"


def test_archive_skips_empty(data_dir):
    assert archive("fina", "a", "response", None) is None
    assert archive("fina", "a", "response", "") is None
    assert not (data_dir / "archive").exists()


def test_archive_swallows_os_error(data_dir, caplog):
    with patch("fiskal.services.archive.write_document", side_effect=OSError("disk full")):
        assert archive("fina", "a", "request", "<x/>") is None
    assert "Failed to archive request for invoice a" in caplog.text
