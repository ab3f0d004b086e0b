import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from stars_relay.core.config import settings
from stars_relay.core.constants import AMOUNT_OUT_OF_BOUNDS
from stars_relay.core.errors import StarsRelayError, ValidationError
from stars_relay.services.fragment import FragmentClient

logger = logging.getLogger(__name__)


@dataclass
class PriceQuote:
    amount: Decimal
    gas_fee: Decimal
    amount_after_gas: Decimal
    exchange_rate: Decimal
    stars_amount: int


class StarsPricing:
    """Converts an inbound TON amount into a number of stars."""

    def __init__(
        self,
        client: Optional[FragmentClient] = None,
        stars_per_ton: Optional[Decimal] = None,
        gas_fee: Optional[Decimal] = None,
        min_stars: Optional[int] = None,
        max_stars: Optional[int] = None,
        use_live_rate: Optional[bool] = None,
    ):
        self._client = client
        self.stars_per_ton = stars_per_ton if stars_per_ton is not None else settings.stars_per_ton
        self.gas_fee = gas_fee if gas_fee is not None else settings.gas_fee
        self.min_stars = min_stars if min_stars is not None else settings.min_stars
        self.max_stars = max_stars if max_stars is not None else settings.max_stars
        self.use_live_rate = (
            use_live_rate if use_live_rate is not None else settings.use_live_exchange_rate
        )

    async def exchange_rate(self) -> Decimal:
        """Stars per TON; the live Fragment rate when enabled, else the configured one."""
        if self.use_live_rate and self._client is not None:
            try:
                price = await self._client.get_stars_price(self.min_stars)
                return price.stars_per_ton
            except StarsRelayError as e:
                logger.warning(f"pricing: live rate unavailable, using configured rate: {e}")
        return self.stars_per_ton

    async def quote(self, amount: Decimal) -> PriceQuote:
        amount = Decimal(amount)
        amount_after_gas = max(Decimal("0"), amount - self.gas_fee)
        rate = await self.exchange_rate()
        stars = int((amount_after_gas * rate).to_integral_value(rounding=ROUND_FLOOR))
        return PriceQuote(
            amount=amount,
            gas_fee=self.gas_fee,
            amount_after_gas=amount_after_gas,
            exchange_rate=rate,
            stars_amount=stars,
        )

    def validate_bounds(self, quote: PriceQuote) -> None:
        if not self.min_stars <= quote.stars_amount <= self.max_stars:
            raise ValidationError(
                f"{AMOUNT_OUT_OF_BOUNDS}: {quote.stars_amount} stars for {quote.amount} TON, "
                f"allowed {self.min_stars}-{self.max_stars}"
            )
