"""
simulation.py - Market stress simulation

Monte Carlo run of the lending protocol over random price paths. Depositors
seed the pools, borrowers lock collateral and take loans sized to their free
collateral, some borrowers repay and some default, and a RecallKeeper sweeps
overdue loans every day. Metrics are sampled once per simulated day and the
protocol invariants are checked after every day.

Price paths are geometric Brownian motion with daily steps:

    S[t+1] = S[t] * exp(-0.5 * sigma^2 * dt + sigma * sqrt(dt) * Z),  dt = 1/365
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from .config import LendingConfig
from .core import (
    Move, SYSTEM_WALLET, OriginType, TransactionOrigin, LedgerError,
    build_transaction, token, round_down,
)
from .keeper import RecallKeeper
from .ledger import Ledger
from .price_oracle import TimeSeriesPriceOracle
from .protocol import LendingProtocol


DAYS_PER_YEAR = 365


@dataclass(frozen=True)
class MarketScenario:
    """
    Parameters of one simulation run.

    tokens maps each collateral token to (initial USD price, annual volatility).
    """
    days: int = 90
    tokens: Mapping[str, Tuple[float, float]] = field(
        default_factory=lambda: {'DAI': (1.0, 0.02), 'WETH': (2000.0, 0.8)}
    )
    num_depositors: int = 4
    num_borrowers: int = 12
    depositor_usd: Tuple[float, float] = (20_000.0, 60_000.0)
    borrower_usd: Tuple[float, float] = (1_000.0, 5_000.0)
    loan_probability: float = 0.25
    default_probability: float = 0.15
    utilisation_of_capacity: Tuple[float, float] = (0.3, 0.9)
    seed: int = 7
    start: datetime = datetime(2025, 1, 1)
    config: LendingConfig = field(default_factory=LendingConfig)


@dataclass
class SimulationResult:
    """Daily metrics of a run plus the protocol in its final state."""
    timestamps: List[datetime]
    tokens: List[str]
    prices: np.ndarray         # (days + 1, n_tokens)
    utilisation: np.ndarray    # (days + 1, n_tokens): active funds lent / total locked
    active_loans: np.ndarray   # (days + 1,)
    loans_issued: int
    loans_repaid: int
    loans_recalled: int
    rejections: Dict[str, int]
    invariant_problems: List[str]
    protocol: LendingProtocol

    @property
    def conserved(self) -> bool:
        return not self.invariant_problems

    def summary(self) -> Dict[str, object]:
        return {
            'loans_issued': self.loans_issued,
            'loans_repaid': self.loans_repaid,
            'loans_recalled': self.loans_recalled,
            'peak_utilisation': dict(zip(self.tokens, self.utilisation.max(axis=0).round(4).tolist())),
            'mean_active_loans': float(self.active_loans.mean()),
            'rejections': dict(self.rejections),
            'conserved': self.conserved,
        }


def generate_price_paths(
    initial_prices: np.ndarray,
    volatilities: np.ndarray,
    days: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Daily GBM price paths with zero drift.

    Returns:
        Array of shape (days + 1, n_tokens); row 0 is initial_prices.
    """
    dt = 1.0 / DAYS_PER_YEAR
    shocks = rng.standard_normal((days, len(initial_prices)))
    log_steps = -0.5 * volatilities ** 2 * dt + volatilities * np.sqrt(dt) * shocks
    log_paths = np.vstack([np.zeros(len(initial_prices)), np.cumsum(log_steps, axis=0)])
    return initial_prices * np.exp(log_paths)


def _dec(value: float, places: int = 6) -> Decimal:
    return round_down(Decimal(repr(float(value))), places)


def _mint(ledger: Ledger, wallet: str, symbol: str, amount: Decimal) -> None:
    pending = build_transaction(
        ledger,
        [Move(amount, symbol, SYSTEM_WALLET, wallet, "simulation:mint")],
        origin=TransactionOrigin(OriginType.SYSTEM, "simulation", event_type="MINT"),
    )
    ledger.execute(pending)


def _deposit(protocol: LendingProtocol, wallet: str, symbol: str, amount: Decimal) -> None:
    ledger = protocol.ledger
    _mint(ledger, wallet, symbol, amount)
    ledger.approve(wallet, protocol.pool_symbol(symbol), symbol, amount)
    protocol.lock(wallet, symbol, amount)


def run_simulation(scenario: Optional[MarketScenario] = None) -> SimulationResult:
    """Run one scenario end to end."""
    scenario = scenario or MarketScenario()
    rng = np.random.default_rng(scenario.seed)
    symbols = list(scenario.tokens)
    initial = np.array([scenario.tokens[s][0] for s in symbols], dtype=float)
    vols = np.array([scenario.tokens[s][1] for s in symbols], dtype=float)
    paths = generate_price_paths(initial, vols, scenario.days, rng)
    timestamps = [scenario.start + timedelta(days=d) for d in range(scenario.days + 1)]

    ledger = Ledger("simulation", scenario.start, verbose=False)
    for symbol in symbols:
        ledger.register_unit(token(symbol, symbol))
    oracle = TimeSeriesPriceOracle(clock=lambda: ledger.current_time)
    for d, ts in enumerate(timestamps):
        oracle.add_prices({s: _dec(paths[d, i], 8) for i, s in enumerate(symbols)}, ts)

    protocol = LendingProtocol(ledger, oracle, scenario.config, verbose=False)
    for symbol in symbols:
        protocol.create_pool(protocol.admin, symbol)
    keeper = RecallKeeper(protocol, "keeper")

    depositors = [ledger.register_wallet(f"depositor_{i}") for i in range(scenario.num_depositors)]
    borrowers = [ledger.register_wallet(f"borrower_{i}") for i in range(scenario.num_borrowers)]
    for wallet in depositors:
        for i, symbol in enumerate(symbols):
            usd = rng.uniform(*scenario.depositor_usd)
            _deposit(protocol, wallet, symbol, _dec(usd / paths[0, i]))
    for wallet in borrowers:
        i = int(rng.integers(len(symbols)))
        usd = rng.uniform(*scenario.borrower_usd)
        _deposit(protocol, wallet, symbols[i], _dec(usd / paths[0, i]))

    repay_on: Dict[str, int] = {}
    rejections: Dict[str, int] = {}
    issued = repaid = 0
    problems: List[str] = []
    utilisation = np.zeros((scenario.days + 1, len(symbols)))
    active_loans = np.zeros(scenario.days + 1, dtype=int)

    def reject(exc: LedgerError) -> None:
        name = type(exc).__name__
        rejections[name] = rejections.get(name, 0) + 1

    for d, ts in enumerate(timestamps):
        ledger.advance_time(ts)

        # Repayments due today land before the keeper sweeps
        for wallet in borrowers:
            if repay_on.get(wallet) == d and protocol.active_loan(wallet) is not None:
                loan = protocol.active_loan(wallet)
                shortfall = loan.amount_due - ledger.get_balance(wallet, loan.token)
                if shortfall > 0:
                    _mint(ledger, wallet, loan.token, shortfall)
                ledger.approve(wallet, protocol.book, loan.token, loan.amount_due)
                try:
                    protocol.repay_loan(wallet)
                    repaid += 1
                except LedgerError as exc:
                    reject(exc)
                del repay_on[wallet]
        keeper.step()

        for wallet in borrowers:
            if protocol.active_loan(wallet) is not None or rng.random() >= scenario.loan_probability:
                continue
            i = int(rng.integers(len(symbols)))
            days = int(rng.integers(1, scenario.config.max_loan_days + 1))
            free_usd = protocol.total_collateral_in_usd(wallet) - protocol.user_locked_collateral_in_usd(wallet)
            capacity = float(free_usd) * 100 / float(scenario.config.collateral_ratio)
            fraction = rng.uniform(*scenario.utilisation_of_capacity)
            amount = _dec(capacity * fraction / paths[d, i])
            if amount <= 0:
                continue
            try:
                protocol.generate_loan(wallet, symbols[i], amount, days)
            except LedgerError as exc:
                reject(exc)
                continue
            issued += 1
            if rng.random() >= scenario.default_probability:
                repay_on[wallet] = d + int(rng.integers(1, days + 1))

        for i, symbol in enumerate(symbols):
            locked = protocol.pool_state(symbol).total_locked
            lent = protocol.active_funds_lent(symbol)
            utilisation[d, i] = float(lent / locked) if locked > 0 else 0.0
        active_loans[d] = sum(1 for w in borrowers if protocol.active_loan(w) is not None)

        check = protocol.check_invariants()
        problems.extend(f"day {d}: {p}" for p in check['problems'])

    recalled = sum(
        1 for loan_id in protocol.loan_ids if protocol.loan(loan_id).recalled_by is not None
    )
    return SimulationResult(
        timestamps=timestamps,
        tokens=symbols,
        prices=paths,
        utilisation=utilisation,
        active_loans=active_loans,
        loans_issued=issued,
        loans_repaid=repaid,
        loans_recalled=recalled,
        rejections=rejections,
        invariant_problems=problems,
        protocol=protocol,
    )
