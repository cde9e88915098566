"""
Commission calculation in integer minor currency units.

The platform commission is computed once, when a transaction is created,
and stored on it together with the rate in force. Nothing recomputes a
stored commission from the current rate.

All arithmetic is exact integer arithmetic: the configured decimal rate is
converted to a fraction and rounded half-up, so no float ever touches a
money value.

Usage:
    from escrow.commission import CommissionCalculator

    split = CommissionCalculator.from_settings().compute(10000)
    split.commission     # 200
    split.seller_amount  # 9800
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.conf import settings

from escrow.state_machines import CommissionRefundPolicy


def _divide_half_up(numerator: int, denominator: int) -> int:
    quotient, remainder = divmod(numerator, denominator)
    if 2 * remainder >= denominator:
        quotient += 1
    return quotient


@dataclass(frozen=True)
class CommissionSplit:
    """
    Result of splitting a price between platform and seller.

    Attributes:
        amount: Item price in minor units
        commission: Platform share
        seller_amount: amount - commission
        rate: Rate the split was computed with
    """

    amount: int
    commission: int
    seller_amount: int
    rate: Decimal


@dataclass(frozen=True)
class PartialRefundSplit:
    """
    Amounts after a partial dispute refund.

    Invariant: refund_amount + commission + seller_amount == amount
    """

    amount: int
    refund_amount: int
    commission: int
    seller_amount: int


class CommissionCalculator:
    """
    Pure commission calculator.

    Args:
        rate: Commission rate as a Decimal or decimal string, 0 <= rate < 1

    Raises:
        ValueError: Rate outside [0, 1) or not a number
    """

    def __init__(self, rate: Decimal | str):
        try:
            self.rate = Decimal(str(rate))
        except InvalidOperation as e:
            raise ValueError(f"Invalid commission rate: {rate!r}") from e
        if not self.rate.is_finite() or self.rate < 0 or self.rate >= 1:
            raise ValueError(f"Commission rate must be in [0, 1), got {rate!r}")

    @classmethod
    def from_settings(cls) -> CommissionCalculator:
        return cls(settings.ESCROW_COMMISSION_RATE)

    def compute(self, amount: int) -> CommissionSplit:
        """
        Split an item price into commission and seller amount.

        commission = round_half_up(amount * rate)
        seller_amount = amount - commission

        Args:
            amount: Item price in minor units (positive integer)

        Returns:
            CommissionSplit with the stored values

        Raises:
            ValueError: amount is not a positive integer

        Example:
            >>> CommissionCalculator("0.02").compute(10000).commission
            200
            >>> CommissionCalculator("0.02").compute(125).commission
            3
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError(f"amount must be a positive integer, got {amount!r}")

        numerator, denominator = self.rate.as_integer_ratio()
        commission = _divide_half_up(amount * numerator, denominator)
        return CommissionSplit(
            amount=amount,
            commission=commission,
            seller_amount=amount - commission,
            rate=self.rate,
        )

    @staticmethod
    def split_partial_refund(
        amount: int,
        commission: int,
        seller_amount: int,
        refund_amount: int,
        policy: str,
    ) -> PartialRefundSplit:
        """
        Apply a partial refund to a stored split.

        RETAIN keeps the stored commission and takes the refund out of the
        seller's share. PROPORTIONAL scales the stored commission to the
        retained share of the amount (half-up) and gives the seller the rest.

        Raises:
            ValueError: refund not strictly between 0 and amount, refund
                larger than the seller share under RETAIN, or unknown policy
        """
        if not 0 < refund_amount < amount:
            raise ValueError(
                f"Partial refund must be between 0 and {amount} exclusive, got {refund_amount}"
            )

        if policy == CommissionRefundPolicy.RETAIN:
            if refund_amount > seller_amount:
                raise ValueError(
                    f"Refund {refund_amount} exceeds seller amount {seller_amount} "
                    "while commission is retained"
                )
            new_commission = commission
        elif policy == CommissionRefundPolicy.PROPORTIONAL:
            new_commission = _divide_half_up(commission * (amount - refund_amount), amount)
        else:
            raise ValueError(f"Unknown commission refund policy: {policy!r}")

        return PartialRefundSplit(
            amount=amount,
            refund_amount=refund_amount,
            commission=new_commission,
            seller_amount=amount - refund_amount - new_commission,
        )
