"""
ledger.py - In-Memory Double-Entry Token Ledger

Every token, wrapped-native and pool movement in the lending system goes
through Ledger.execute(). Pools and the loan book never touch balances
directly: they hand the ledger a PendingTransaction and the ledger either
applies the whole thing or nothing.

What the ledger owns:
    - balances per wallet and unit, plus an index of holders per unit
    - ERC20-style allowances, consumed by moves that carry a spender
    - unit state for pools and the loan book, guarded against stale writes
    - the logical clock (forward only) and the audit log
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any
import copy
from decimal import Decimal

from .core import (
    Transaction, Unit, PendingTransaction, ExecuteResult,
    Positions, UnitState, BalanceMap,
    SYSTEM_WALLET,
    LedgerError, UnitNotRegistered, WalletNotRegistered, InvalidAmount,
    _freeze_state, to_decimal,
)


AllowanceKey = Tuple[str, str, str]  # (owner, spender, unit)

EPOCH = datetime(1970, 1, 1)


def _zero_balances():
    return defaultdict(lambda: Decimal("0"))


class Ledger:
    """
    Token ledger with allowances, stale-state protection and an audit log.

    Satisfies the LedgerView protocol, so the pure compute_* functions in
    crypto_lending.units can read from it without being able to mutate it.

    Balances are validated net per transaction: a pool may receive a
    repayment and pay out a reward in the same transaction even if it could
    not pay the reward first. SYSTEM_WALLET issues and redeems and has no
    balance floor.

    Example:
        ledger = Ledger("main", datetime(2025, 1, 1))
        ledger.register_unit(token("DAI", "Dai Stablecoin"))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")

        ledger.execute(build_transaction(ledger, [
            Move(Decimal("100"), "DAI", SYSTEM_WALLET, "alice", "faucet"),
        ]))
        ledger.approve("alice", "bob", "DAI", Decimal("40"))
        ledger.execute(build_transaction(ledger, [
            Move(Decimal("40"), "DAI", "alice", "bob", "pull", spender="bob"),
        ]))
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Args:
            name: Ledger identifier, part of every exec_id
            initial_time: Starting logical time (default: the Unix epoch)
            verbose: Print each applied or rejected transaction
            test_mode: Allow set_balance(), which bypasses double entry
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {SYSTEM_WALLET: _zero_balances()}
        self.allowances: Dict[AllowanceKey, Decimal] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = {SYSTEM_WALLET}
        self.transaction_log: List[Transaction] = []
        self.last_rejection: Optional[str] = None
        self.verbose = verbose
        self._current_time: datetime = initial_time or EPOCH
        self._test_mode = test_mode
        self._next_sequence: int = 0
        self._holders: Dict[str, Dict[str, Decimal]] = defaultdict(dict)

    def _require_wallet(self, wallet_id: str) -> None:
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")

    def _require_unit(self, unit_symbol: str) -> Unit:
        try:
            return self.units[unit_symbol]
        except KeyError:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered") from None

    # ------------------------------------------------------------------
    # Read side (LedgerView)
    # ------------------------------------------------------------------

    @property
    def current_time(self) -> datetime:
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Balance of `unit_symbol` held by `wallet_id`; zero if never touched."""
        self._require_wallet(wallet_id)
        self._require_unit(unit_symbol)
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Private copy of a pool's or the loan book's state."""
        return copy.deepcopy(self._require_unit(unit_symbol).state)

    def get_unit(self, symbol: str) -> Unit:
        return self._require_unit(symbol)

    def get_positions(self, unit_symbol: str) -> Positions:
        """Holders of a unit with non-zero balances."""
        return dict(self._holders.get(unit_symbol, {}))

    def get_allowance(self, owner: str, spender: str, unit_symbol: str) -> Decimal:
        return self.allowances.get((owner, spender, unit_symbol), Decimal("0"))

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        self._require_wallet(wallet_id)
        return {u: q for u, q in self.balances[wallet_id].items() if q != 0}

    def list_wallets(self) -> Set[str]:
        return set(self.registered_wallets)

    def list_units(self) -> List[str]:
        return sorted(self.units)

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    # ------------------------------------------------------------------
    # Supplies
    # ------------------------------------------------------------------

    def _sum_holdings(self, unit_symbol: str, include_system: bool) -> Decimal:
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0"))
             for w in sorted(self.registered_wallets)
             if include_system or w != SYSTEM_WALLET),
            Decimal("0"),
        )

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Sum of every wallet's balance, SYSTEM_WALLET included.

        Zero for any unit that only ever moved through execute(): minting
        leaves SYSTEM_WALLET short by exactly what everyone else holds.
        """
        self._require_unit(unit_symbol)
        return self._sum_holdings(unit_symbol, include_system=True)

    def circulating_supply(self, unit_symbol: str) -> Decimal:
        """Amount held outside SYSTEM_WALLET."""
        return self._sum_holdings(unit_symbol, include_system=False)

    def verify_double_entry(self, expected_supplies: Dict[str, Decimal] = None) -> Dict[str, Any]:
        """
        Check that every token unit's total supply matches what is expected.

        Args:
            expected_supplies: unit -> expected total supply. Units not listed
                are expected to total zero.

        Returns:
            {'valid': bool, 'supplies': {unit: total},
             'discrepancies': [{'unit', 'expected', 'actual', 'difference'}]}
        """
        expected_supplies = expected_supplies or {}
        supplies = {}
        discrepancies = []

        for unit_symbol in sorted(self.units):
            if not self.units[unit_symbol].is_token:
                continue
            actual = self._sum_holdings(unit_symbol, include_system=True)
            supplies[unit_symbol] = actual
            expected = expected_supplies.get(unit_symbol, Decimal("0"))
            if actual != expected:
                discrepancies.append({
                    'unit': unit_symbol, 'expected': expected, 'actual': actual,
                    'difference': abs(actual - expected),
                })

        for unit_symbol, expected in expected_supplies.items():
            if unit_symbol not in supplies:
                discrepancies.append({
                    'unit': unit_symbol, 'expected': expected, 'actual': Decimal("0"),
                    'difference': abs(expected), 'error': 'unit not registered',
                })

        return {'valid': not discrepancies, 'supplies': supplies, 'discrepancies': discrepancies}

    # ------------------------------------------------------------------
    # Clock and registration
    # ------------------------------------------------------------------

    def advance_time(self, new_time: datetime) -> None:
        """Move the clock forward. Raises ValueError when asked to go backwards."""
        if new_time < self._current_time:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._current_time}")
        self._current_time = new_time

    def register_wallet(self, wallet_id: str) -> str:
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = _zero_balances()
        return wallet_id

    def ensure_wallet(self, wallet_id: str) -> str:
        """Register `wallet_id` unless it already exists."""
        if wallet_id not in self.registered_wallets:
            self.register_wallet(wallet_id)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """Add a token, wrapper, pool or loan book. Symbols must be unique."""
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            print(f"📝 Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Overwrite a balance directly. Test mode only.

        This breaks the zero-sum property of total_supply(); pass the
        resulting totals to verify_double_entry() when using it.
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is only available with test_mode=True; "
                "move value with build_transaction() and execute()"
            )
        self._require_wallet(wallet_id)
        self._require_unit(unit_symbol)
        quantity = to_decimal(quantity)
        self.balances[wallet_id][unit_symbol] = quantity
        self._index_holder(wallet_id, unit_symbol, quantity)

    def approve(self, owner: str, spender: str, unit_symbol: str, amount: Decimal) -> None:
        """
        Let `spender` pull up to `amount` of a unit from `owner`.

        Overwrites any earlier allowance; an amount of zero removes it.
        """
        self._require_wallet(owner)
        self._require_wallet(spender)
        self._require_unit(unit_symbol)
        amount = to_decimal(amount)
        if amount < 0:
            raise InvalidAmount(f"Allowance cannot be negative: {amount}")
        key = (owner, spender, unit_symbol)
        if amount == 0:
            self.allowances.pop(key, None)
        else:
            self.allowances[key] = amount
        if self.verbose:
            print(f"🔑 Approved: {owner} → {spender} up to {amount} {unit_symbol}")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Apply a PendingTransaction atomically.

        Rejected (nothing applied, reason kept in last_rejection) when:
            - the transaction is timestamped after the ledger clock
            - a unit or wallet is unknown, or a move targets a non-token unit
            - a spender pulls more than its remaining allowance
            - a state change was built against a state that has since changed
            - a wallet's net result falls outside the unit's balance limits
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        reason = self._rejection_reason(pending)
        if reason:
            self.last_rejection = reason
            if self.verbose:
                print(f"✗ REJECTED: {reason}")
            return ExecuteResult.REJECTED

        sequence = self._next_sequence
        self._next_sequence += 1
        micros = int(self._current_time.timestamp() * 1_000_000)
        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            exec_id=f"exec:{self.name}:{sequence:012d}:{micros}",
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
        )

        for move in tx.moves:
            if move.spender is not None and move.spender != move.source:
                key = (move.source, move.spender, move.unit_symbol)
                left = self.allowances[key] - move.quantity
                if left:
                    self.allowances[key] = left
                else:
                    del self.allowances[key]
            self._credit(move.source, move.unit_symbol, -move.quantity)
            self._credit(move.dest, move.unit_symbol, move.quantity)

        for sc in tx.state_changes:
            new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
            self.units[sc.unit] = replace(self.units[sc.unit], _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        if self.verbose:
            lines = repr(tx).split('\n')
            lines[-1] = "├" + "─" * 100 + "┤"
            lines.append("│" + " ✓ APPLIED".ljust(100) + "│")
            lines.append("└" + "─" * 100 + "┘")
            print("\n".join(lines))
        return ExecuteResult.APPLIED

    def _rejection_reason(self, pending: PendingTransaction) -> str:
        """Empty string when the transaction may be applied."""
        if pending.timestamp > self._current_time:
            return "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return f"unit not registered: {move.unit_symbol}"
            if not self.units[move.unit_symbol].is_token:
                return f"unit is not transferable: {move.unit_symbol}"
            for wallet in (move.source, move.dest, move.spender):
                if wallet is not None and wallet not in self.registered_wallets:
                    return f"wallet not registered: {wallet}"

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return f"unit not registered: {sc.unit}"
            old_state = sc.old_state if isinstance(sc.old_state, dict) else {}
            if old_state != self.units[sc.unit].state:
                return f"stale state for {sc.unit}"

        pulled: Dict[AllowanceKey, Decimal] = defaultdict(Decimal)
        net: Dict[Tuple[str, str], Decimal] = defaultdict(Decimal)
        for move in pending.moves:
            if move.spender is not None and move.spender != move.source:
                pulled[(move.source, move.spender, move.unit_symbol)] += move.quantity
            unit = self.units[move.unit_symbol]
            net[(move.source, move.unit_symbol)] = unit.round(net[(move.source, move.unit_symbol)] - move.quantity)
            net[(move.dest, move.unit_symbol)] = unit.round(net[(move.dest, move.unit_symbol)] + move.quantity)

        for (owner, spender, unit_sym), quantity in pulled.items():
            allowed = self.get_allowance(owner, spender, unit_sym)
            if quantity > allowed:
                return f"allowance {owner}→{spender} {unit_sym}: {quantity} > {allowed}"

        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = unit.round(self.balances[wallet][unit_sym] + delta)
            if proposed < unit.min_balance:
                return f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return ""

    def _credit(self, wallet_id: str, unit_symbol: str, delta: Decimal) -> None:
        balance = self.units[unit_symbol].round(self.balances[wallet_id][unit_symbol] + delta)
        self.balances[wallet_id][unit_symbol] = balance
        self._index_holder(wallet_id, unit_symbol, balance)

    def _index_holder(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        if quantity:
            self._holders[unit_symbol][wallet_id] = quantity
        else:
            self._holders[unit_symbol].pop(wallet_id, None)

    # ------------------------------------------------------------------
    # Copies
    # ------------------------------------------------------------------

    def clone(self) -> Ledger:
        """Fully independent copy: units, balances, allowances, log and clock."""
        cloned = Ledger(self.name, self._current_time, verbose=self.verbose, test_mode=self._test_mode)
        cloned.units = {
            symbol: replace(unit, _frozen_state=_freeze_state(copy.deepcopy(unit.state)))
            for symbol, unit in self.units.items()
        }
        cloned.registered_wallets = set(self.registered_wallets)
        cloned.balances = {w: defaultdict(lambda: Decimal("0"), b) for w, b in self.balances.items()}
        cloned.allowances = dict(self.allowances)
        cloned.transaction_log = list(self.transaction_log)
        cloned.last_rejection = self.last_rejection
        cloned._next_sequence = self._next_sequence
        for unit_symbol, holders in self._holders.items():
            cloned._holders[unit_symbol] = dict(holders)
        return cloned

    def snapshot(self) -> Dict[str, Any]:
        """Comparable picture of all mutable state; equal snapshots mean equal ledgers."""
        return {
            'time': self._current_time,
            'balances': {w: {u: q for u, q in b.items() if q != 0} for w, b in self.balances.items()},
            'allowances': dict(self.allowances),
            'units': {symbol: unit.state for symbol, unit in self.units.items()},
            'wallets': set(self.registered_wallets),
            'log_length': len(self.transaction_log),
        }
