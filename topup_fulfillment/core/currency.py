"""Static-rate currency conversion for charge amounts."""
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping


class UnknownCurrencyError(Exception):
    """Raised when no rate is configured for a currency."""

    pass


class StaticRateConverter:
    """
    Converts minor-unit amounts using fixed rates expressed in USD per unit.

    All supported currencies are treated as having two minor digits.
    """

    def __init__(self, rates_to_usd: Mapping[str, Decimal]):
        self.rates: Dict[str, Decimal] = {
            code.upper(): Decimal(str(rate)) for code, rate in rates_to_usd.items()
        }

    def rate(self, currency: str) -> Decimal:
        try:
            return self.rates[currency.upper()]
        except KeyError:
            raise UnknownCurrencyError(f"no rate configured for {currency}") from None

    def convert_minor(self, amount_minor: int, from_currency: str, to_currency: str) -> int:
        """
        Convert ``amount_minor`` between currencies, rounding half up.

        Raises:
            UnknownCurrencyError: If either currency has no rate
        """
        if from_currency.upper() == to_currency.upper():
            return int(amount_minor)
        usd = Decimal(amount_minor) * self.rate(from_currency)
        converted = usd / self.rate(to_currency)
        return int(converted.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
