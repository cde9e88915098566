"""
Tests for CommissionCalculator.

Commission is integer arithmetic on minor units with half-up rounding;
these tests pin the rounding and the partial refund policies.
"""

from decimal import Decimal

import pytest

from escrow.commission import CommissionCalculator
from escrow.state_machines import CommissionRefundPolicy


class TestCompute:
    """Tests for CommissionCalculator.compute."""

    def test_two_percent_of_round_amount(self):
        split = CommissionCalculator("0.02").compute(10000)

        assert split.commission == 200
        assert split.seller_amount == 9800
        assert split.amount == 10000
        assert split.rate == Decimal("0.02")

    def test_rounds_half_up(self):
        """125 * 0.02 = 2.5 rounds up to 3."""
        split = CommissionCalculator("0.02").compute(125)

        assert split.commission == 3
        assert split.seller_amount == 122

    def test_rounds_down_below_half(self):
        """124 * 0.02 = 2.48 rounds down to 2."""
        assert CommissionCalculator("0.02").compute(124).commission == 2

    def test_zero_rate(self):
        split = CommissionCalculator("0").compute(5000)

        assert split.commission == 0
        assert split.seller_amount == 5000

    def test_parts_always_sum_to_amount(self):
        calculator = CommissionCalculator("0.035")

        for amount in (1, 7, 99, 101, 12345, 999999):
            split = calculator.compute(amount)
            assert split.commission + split.seller_amount == amount

    @pytest.mark.parametrize("amount", [0, -100, 10.5, "100", True])
    def test_rejects_non_positive_or_non_integer_amount(self, amount):
        with pytest.raises(ValueError):
            CommissionCalculator("0.02").compute(amount)

    @pytest.mark.parametrize("rate", ["-0.01", "1", "1.5", "abc", "NaN"])
    def test_rejects_invalid_rate(self, rate):
        with pytest.raises(ValueError):
            CommissionCalculator(rate)

    def test_from_settings_uses_configured_rate(self, settings):
        settings.ESCROW_COMMISSION_RATE = "0.05"

        assert CommissionCalculator.from_settings().compute(10000).commission == 500


class TestSplitPartialRefund:
    """Tests for CommissionCalculator.split_partial_refund."""

    def test_retain_takes_refund_from_seller_share(self):
        split = CommissionCalculator.split_partial_refund(
            amount=10000,
            commission=200,
            seller_amount=9800,
            refund_amount=3000,
            policy=CommissionRefundPolicy.RETAIN,
        )

        assert split.refund_amount == 3000
        assert split.commission == 200
        assert split.seller_amount == 6800

    def test_retain_rejects_refund_above_seller_share(self):
        with pytest.raises(ValueError, match="exceeds seller amount"):
            CommissionCalculator.split_partial_refund(
                amount=10000,
                commission=200,
                seller_amount=9800,
                refund_amount=9900,
                policy=CommissionRefundPolicy.RETAIN,
            )

    def test_proportional_scales_commission(self):
        split = CommissionCalculator.split_partial_refund(
            amount=10000,
            commission=200,
            seller_amount=9800,
            refund_amount=3000,
            policy=CommissionRefundPolicy.PROPORTIONAL,
        )

        assert split.commission == 140
        assert split.seller_amount == 6860
        assert split.refund_amount + split.commission + split.seller_amount == 10000

    def test_proportional_rounds_half_up(self):
        """3 * 50 / 100 = 1.5 rounds up to 2."""
        split = CommissionCalculator.split_partial_refund(
            amount=100,
            commission=3,
            seller_amount=97,
            refund_amount=50,
            policy=CommissionRefundPolicy.PROPORTIONAL,
        )

        assert split.commission == 2
        assert split.seller_amount == 48

    @pytest.mark.parametrize("refund_amount", [0, 10000, 10001])
    def test_refund_must_be_strictly_inside_amount(self, refund_amount):
        with pytest.raises(ValueError, match="between 0 and"):
            CommissionCalculator.split_partial_refund(
                amount=10000,
                commission=200,
                seller_amount=9800,
                refund_amount=refund_amount,
                policy=CommissionRefundPolicy.RETAIN,
            )

    def test_unknown_policy(self):
        with pytest.raises(ValueError, match="Unknown commission refund policy"):
            CommissionCalculator.split_partial_refund(
                amount=10000,
                commission=200,
                seller_amount=9800,
                refund_amount=1000,
                policy="generous",
            )
