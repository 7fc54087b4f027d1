"""
Unit tests for amount conversion and the payment return URL helpers.
"""
import pytest
from decimal import Decimal

from rider_gateway.errors import ValidationFault
from rider_gateway.services.payment import (
    parse_return_params, strip_return_params, to_minor_units,
)


class TestToMinorUnits:
    def test_whole_amount_is_major_units(self):
        # no integer-means-cents guessing: 25 is always 25.00
        assert to_minor_units(Decimal("25")) == 2500
        assert to_minor_units(Decimal("25.0")) == 2500

    def test_cents(self):
        assert to_minor_units(Decimal("12.34")) == 1234

    def test_rounds_half_up(self):
        assert to_minor_units(Decimal("10.005")) == 1001

    def test_zero(self):
        assert to_minor_units(Decimal("0")) == 0

    def test_negative_rejected(self):
        with pytest.raises(ValidationFault):
            to_minor_units(Decimal("-1"))


class TestReturnParams:
    URL = (
        "https://app.yah.test/v1/rides/r1/payment-return"
        "?payment_success=true&state=tok.en.sig&psp_reference=PSP123&result_code=Authorised&tab=details"
    )

    def test_parse(self):
        params = parse_return_params(self.URL)
        assert params.payment_success is True
        assert params.tip_payment_success is False
        assert params.psp_reference == "PSP123"
        assert params.result_code == "Authorised"
        assert params.state == "tok.en.sig"
        assert params.present

    def test_parse_without_params(self):
        params = parse_return_params("https://app.yah.test/ride/r1")
        assert not params.present
        assert params.psp_reference is None

    def test_strip_keeps_unrelated_params(self):
        assert strip_return_params(self.URL) == "https://app.yah.test/v1/rides/r1/payment-return?tab=details"

    def test_strip_all(self):
        url = "https://app.yah.test/ride/r1?tip_payment_success=1&psp_reference=X&result_code=Received"
        assert strip_return_params(url) == "https://app.yah.test/ride/r1"
