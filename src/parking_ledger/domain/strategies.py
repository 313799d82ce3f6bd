# File: src/parking_ledger/domain/strategies.py
"""
Pricing Strategies for the Parking Ledger

A PricingStrategy turns a stay (TimeRange) and the facility's hourly rate
into a fee. The ledger uses HourlyRoundUpPricingStrategy:

    billed_hours = whole hours
                 + leftover minutes / 60, rounded up at the 2nd decimal
    billed_hours = max(billed_hours, 1.00)
    fee          = hourly_rate * billed_hours, rounded to cents

so 09:00 -> 10:05 at 5.00/h bills 1.09 hours = 5.45.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_UP
import logging

from .models import Money, TimeRange


HUNDREDTH = Decimal('0.01')
MINUTES_PER_HOUR = Decimal(60)


class PricingStrategy(ABC):
    """
    Abstract base class for pricing strategies
    Defines the interface for fee calculation algorithms
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def calculate_billed_hours(self, time_range: TimeRange) -> Decimal:
        """Hours to charge for the given stay"""
        pass

    def calculate_fee(self, hourly_rate: Money, time_range: TimeRange) -> Money:
        """
        Calculate the fee for a stay
        Returns: fee in whole cents
        """
        billed_hours = self.calculate_billed_hours(time_range)
        fee = (hourly_rate * billed_hours).rounded()

        self.logger.debug(
            f"Billed {billed_hours} h at {hourly_rate.format()}/h for {time_range}: {fee.format()}"
        )
        return fee

    def get_strategy_name(self) -> str:
        return self.__class__.__name__.replace("PricingStrategy", "")


class HourlyRoundUpPricingStrategy(PricingStrategy):
    """
    Hourly pricing with a fractional-hour surcharge
    - Whole hours are billed as is
    - Leftover minutes bill as a fraction of an hour rounded up to 0.01 h
    - Every stay bills at least one hour
    """

    MINIMUM_BILLED_HOURS = Decimal('1.00')

    def calculate_billed_hours(self, time_range: TimeRange) -> Decimal:
        billed_hours = Decimal(time_range.whole_hours)

        remainder_minutes = time_range.remainder_minutes
        if remainder_minutes > 0:
            fraction = Decimal(remainder_minutes) / MINUTES_PER_HOUR
            billed_hours += fraction.quantize(HUNDREDTH, rounding=ROUND_UP)

        return max(billed_hours, self.MINIMUM_BILLED_HOURS)
