"""
Simulated DEX venues.

The router quotes every configured venue around a reference rate, picks the
one with the best output net of fee, and "executes" by echoing the quote back
with a synthetic transaction hash. All randomness comes from one injectable
`random.Random`, and both simulated network waits are parameters, so tests can
pin venue selection and run with zero latency.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from order_engine.execution.models import ExecutionResult, Quote

DEFAULT_REFERENCE_RATE = 0.05
PRICE_BAND_LOW = 0.98
PRICE_BAND_WIDTH = 0.04
TX_HASH_PREFIX = "5"
TX_HASH_HEX_LEN = 87


@dataclass(frozen=True)
class Venue:
    name: str
    fee_rate: float = 0.003


DEFAULT_VENUES: tuple[Venue, ...] = (
    Venue("raydium", 0.003),
    Venue("meteora", 0.003),
)


class MockDexRouter:
    def __init__(
        self,
        *,
        rng: Optional[random.Random] = None,
        seed: Optional[int] = None,
        venues: Sequence[Venue] = DEFAULT_VENUES,
        reference_rate: float = DEFAULT_REFERENCE_RATE,
        reference_rates: Optional[Mapping[tuple[str, str], float]] = None,
        quote_latency_s: float = 0.2,
        execute_latency_s: float = 2.0,
    ) -> None:
        if not venues:
            raise ValueError("at least one venue is required")
        self._rng = rng if rng is not None else random.Random(seed)
        self.venues = tuple(venues)
        self.reference_rate = float(reference_rate)
        self._reference_rates = {(a.upper(), b.upper()): float(r) for (a, b), r in dict(reference_rates or {}).items()}
        self.quote_latency_s = max(0.0, float(quote_latency_s))
        self.execute_latency_s = max(0.0, float(execute_latency_s))

    def rate_for(self, token_in: str, token_out: str) -> float:
        return self._reference_rates.get((str(token_in).upper(), str(token_out).upper()), self.reference_rate)

    def _quote_venue(self, venue: Venue, *, rate: float, amount_in: float) -> Quote:
        price = rate * (PRICE_BAND_LOW + self._rng.random() * PRICE_BAND_WIDTH)
        return Quote(
            dex=venue.name,
            price=price,
            fee=venue.fee_rate,
            estimated_output=float(amount_in) * price * (1.0 - venue.fee_rate),
        )

    async def quote_all(self, token_in: str, token_out: str, amount_in: float) -> list[Quote]:
        await asyncio.sleep(self.quote_latency_s)
        rate = self.rate_for(token_in, token_out)
        return [self._quote_venue(v, rate=rate, amount_in=amount_in) for v in self.venues]

    async def get_best_quote(self, token_in: str, token_out: str, amount_in: float) -> Quote:
        quotes = await self.quote_all(token_in, token_out, amount_in)
        return select_best_quote(quotes)

    async def execute_swap(self, quote: Quote, token_in: str, token_out: str, amount_in: float) -> ExecutionResult:
        await asyncio.sleep(self.execute_latency_s)
        tx_hash = TX_HASH_PREFIX + "".join(format(self._rng.randrange(16), "x") for _ in range(TX_HASH_HEX_LEN))
        return ExecutionResult(
            dex=quote.dex,
            executed_price=quote.price,
            amount_out=quote.estimated_output,
            tx_hash=tx_hash,
        )


def select_best_quote(quotes: Sequence[Quote]) -> Quote:
    """Highest estimated output wins; on a tie the earlier venue wins."""
    if not quotes:
        raise ValueError("no quotes to select from")
    best = quotes[0]
    for q in quotes[1:]:
        if q.estimated_output > best.estimated_output:
            best = q
    return best
