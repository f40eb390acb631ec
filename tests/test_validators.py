from __future__ import annotations

import pytest

from fiskal.utils.validators import is_valid_oib, validate_oib


class TestOib:
    @pytest.mark.parametrize("value", ["12345678903", "00000000000"])
    def test_valid(self, value):
        assert is_valid_oib(value)

    @pytest.mark.parametrize(
        "value",
        [None, "", "1234567890", "123456789012", "1234567890A", " 2345678903", "١٢٣٤٥٦٧٨٩٠٣", 12345678903],
    )
    def test_invalid(self, value):
        assert not is_valid_oib(value)

    def test_validate_strips(self):
        assert validate_oib(" 12345678903 ") == "12345678903"

    def test_validate_rejects(self):
        with pytest.raises(ValueError, match="11 digits"):
            validate_oib("123")
