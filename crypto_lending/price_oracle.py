"""
price_oracle.py - Price oracles and the USD conversion adapter

Oracles report raw fixed-point prices the way on-chain feeds do:
price_of(token) returns (integer_price, decimals), so 1.25 USD at 8
decimals is (125000000, 8).

Classes:
- PriceOracle: Protocol for any price feed
- StaticPriceOracle: Fixed prices, updatable by hand
- TimeSeriesPriceOracle: Time-varying prices read at a clock's current time
- OracleAdapter: Normalises feeds to PRICE_DECIMALS and takes snapshots
- PriceSnapshot: Point-in-time prices used for a whole operation

Conversions never round in the borrower's favour: USD values of amounts
are rounded down, token amounts needed to cover a USD requirement are
rounded up.
"""

from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

from .core import PRICE_DECIMALS, PriceUnavailable, round_down, round_up, to_decimal


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for price feeds.

    price_of returns the token's USD price as an integer scaled by
    10**decimals, together with decimals.
    """

    def price_of(self, token: str) -> Tuple[int, int]:
        ...


def _to_raw(price: Decimal, decimals: int) -> int:
    return int(round_down(to_decimal(price), decimals).scaleb(decimals))


class StaticPriceOracle:
    """
    Oracle with fixed prices (time-independent).

    Prices are given as human-readable Decimals and reported as raw
    integers at `decimals` precision.
    """

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None, decimals: int = PRICE_DECIMALS):
        self.decimals = decimals
        self.prices: Dict[str, Decimal] = {
            token: to_decimal(price) for token, price in (prices or {}).items()
        }

    def price_of(self, token: str) -> Tuple[int, int]:
        if token not in self.prices:
            raise PriceUnavailable(f"No price for {token}")
        return _to_raw(self.prices[token], self.decimals), self.decimals

    def set_price(self, token: str, price: Decimal) -> None:
        """Update the price of a token."""
        self.prices[token] = to_decimal(price)

    def set_prices(self, prices: Dict[str, Decimal]) -> None:
        for token, price in prices.items():
            self.set_price(token, price)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} prices, decimals={self.decimals})"


class TimeSeriesPriceOracle:
    """
    Oracle with time-varying prices.

    Stores price observations per token and answers with the most recent
    observation at or before clock(). Typical use passes the ledger's
    clock so the oracle follows simulated time:

        oracle = TimeSeriesPriceOracle(clock=lambda: ledger.current_time)
        oracle.add_price('WETH', t0, Decimal('2000'))
    """

    def __init__(
        self,
        price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        decimals: int = 8,
    ):
        self.decimals = decimals
        self.clock = clock
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}

        if price_paths:
            for token, path in price_paths.items():
                if not path:
                    continue
                self.price_history[token] = sorted(
                    ((ts, to_decimal(p)) for ts, p in path), key=lambda x: x[0]
                )

    def add_price(self, token: str, timestamp: datetime, price: Decimal) -> None:
        history = self.price_history.setdefault(token, [])
        history.append((timestamp, to_decimal(price)))
        history.sort(key=lambda x: x[0])

    def add_prices(self, prices: Dict[str, Decimal], timestamp: datetime) -> None:
        for token, price in prices.items():
            self.add_price(token, timestamp, price)

    def get_price(self, token: str, timestamp: Optional[datetime] = None) -> Optional[Decimal]:
        """Most recent price at or before timestamp (latest if timestamp is None)."""
        history = self.price_history.get(token)
        if not history:
            return None
        if timestamp is None:
            return history[-1][1]
        idx = bisect_right([ts for ts, _ in history], timestamp)
        if idx == 0:
            return None
        return history[idx - 1][1]

    def price_of(self, token: str) -> Tuple[int, int]:
        now = self.clock() if self.clock else None
        price = self.get_price(token, now)
        if price is None:
            raise PriceUnavailable(f"No price for {token} at {now}")
        return _to_raw(price, self.decimals), self.decimals

    def get_all_timestamps(self, token: Optional[str] = None) -> List[datetime]:
        if token:
            return [ts for ts, _ in self.price_history.get(token, [])]
        all_times = set()
        for path in self.price_history.values():
            all_times.update(ts for ts, _ in path)
        return sorted(all_times)

    def __repr__(self):
        total = sum(len(h) for h in self.price_history.values())
        return f"TimeSeriesPriceOracle({len(self.price_history)} tokens, {total} observations)"


@dataclass(frozen=True, slots=True)
class PriceSnapshot:
    """
    Prices for a set of tokens frozen for the duration of one operation.

    Prices are USD per whole token at `price_decimals` precision.
    """
    prices: Mapping[str, Decimal]
    price_decimals: int = PRICE_DECIMALS
    taken_at: Optional[datetime] = None

    def price(self, token: str) -> Decimal:
        if token not in self.prices:
            raise PriceUnavailable(f"No price for {token} in snapshot")
        return self.prices[token]

    def usd(self, token: str, amount: Decimal) -> Decimal:
        """USD value of `amount` whole tokens, rounded down."""
        return usd_value(amount, self.price(token), self.price_decimals)

    def token_amount(self, token: str, usd: Decimal, token_decimals: int,
                     rounding: str = ROUND_UP) -> Decimal:
        """Token amount worth `usd`; rounded up by default so it covers the value."""
        return token_amount_for_usd(usd, self.price(token), token_decimals, rounding)


def usd_value(amount: Decimal, price: Decimal, price_decimals: int = PRICE_DECIMALS) -> Decimal:
    """
    USD value of a token amount, truncated to price_decimals.

    Args:
        amount: Whole-token amount (e.g. Decimal("1.5") WETH)
        price: USD per whole token
        price_decimals: Fixed-point precision of the result
    """
    return round_down(to_decimal(amount) * to_decimal(price), price_decimals)


def token_amount_for_usd(usd: Decimal, price: Decimal, token_decimals: int,
                         rounding: str = ROUND_UP) -> Decimal:
    """
    Token amount corresponding to a USD value at the token's precision.

    ROUND_UP when the amount must cover a requirement (collateral to lock),
    ROUND_DOWN when the amount is paid out.

    Raises:
        PriceUnavailable: If price is not positive
    """
    price = to_decimal(price)
    if price <= 0:
        raise PriceUnavailable(f"Cannot convert USD at non-positive price {price}")
    raw = to_decimal(usd) / price
    if rounding == ROUND_DOWN:
        return round_down(raw, token_decimals)
    return round_up(raw, token_decimals)


class OracleAdapter:
    """
    Reads a PriceOracle and normalises prices to a fixed precision.

    Example:
        adapter = OracleAdapter(StaticPriceOracle({'DAI': Decimal('1')}))
        adapter.usd_amount_for_token('DAI', Decimal('100'))  # Decimal('100')
    """

    def __init__(self, oracle: PriceOracle, price_decimals: int = PRICE_DECIMALS):
        self.oracle = oracle
        self.price_decimals = price_decimals

    def price(self, token: str) -> Decimal:
        """USD per whole token at price_decimals precision."""
        raw, decimals = self.oracle.price_of(token)
        if raw <= 0:
            raise PriceUnavailable(f"Oracle returned non-positive price for {token}: {raw}")
        return round_down(Decimal(raw).scaleb(-decimals), self.price_decimals)

    def usd_amount_for_token(self, token: str, amount: Decimal) -> Decimal:
        return usd_value(amount, self.price(token), self.price_decimals)

    def snapshot(self, tokens: Iterable[str], taken_at: Optional[datetime] = None) -> PriceSnapshot:
        """Read every token's price once."""
        return PriceSnapshot(
            prices={token: self.price(token) for token in tokens},
            price_decimals=self.price_decimals,
            taken_at=taken_at,
        )

    def __repr__(self):
        return f"OracleAdapter({self.oracle!r}, price_decimals={self.price_decimals})"
