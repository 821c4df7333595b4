# /mintgate/core/gas_estimator.py
# Fee quotes for first submissions. Replacements are priced by the monitor.

from decimal import Decimal

from mintgate.core.logger import get_logger
from mintgate.core.decorators import retriable_network_call

log = get_logger(__name__)

# Floor used when a node reports a zero gas price (some L2 devnets do).
MIN_GAS_PRICE_WEI = 1_000_000


class GasEstimator:
    """
    Provides legacy gas price quotes for one chain client.
    """
    def __init__(self, chain, buffer: Decimal = Decimal("1.2")):
        self.chain = chain
        self.buffer = buffer

    @retriable_network_call
    async def get_gas_price(self) -> int:
        return await self.chain.gas_price()

    async def quote(self) -> int:
        """
        Current gas price plus a buffer so the first attempt is competitive.

        Returns:
            Gas price in wei.
        """
        base = max(await self.get_gas_price(), MIN_GAS_PRICE_WEI)
        price = int(Decimal(base) * self.buffer)
        log.debug("GAS_PRICE_QUOTED", base=base, price=price)
        return price
