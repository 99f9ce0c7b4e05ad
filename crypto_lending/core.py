"""
Core types and pure functions for the lending ledger.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Move, PendingTransaction, Transaction, Unit
3. Exceptions: LedgerError and the lending error taxonomy
4. Type aliases: Positions, BalanceMap, UnitState
5. Rounding helpers that fix the direction of every truncation
6. Unit factories for fungible tokens

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_UP, getcontext
from enum import Enum
import copy
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Token amounts carry up to 18 fractional digits and USD values are scaled
# to 18 decimals, so products of amount * price need well over 36 digits.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_LENDING_DECIMAL_CONTEXT = getcontext()
_LENDING_DECIMAL_CONTEXT.prec = 60
_LENDING_DECIMAL_CONTEXT.rounding = ROUND_DOWN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance and redemption (token minting, wrapping).
# The system wallet is exempt from balance validation.
SYSTEM_WALLET = "system"

UNIT_TYPE_TOKEN = "TOKEN"
UNIT_TYPE_NATIVE = "NATIVE"
UNIT_TYPE_WRAPPED_NATIVE = "WRAPPED_NATIVE"
UNIT_TYPE_LIQUIDITY_POOL = "LIQUIDITY_POOL"
UNIT_TYPE_LOAN_BOOK = "LOAN_BOOK"

# Fungible unit types that wallets can hold.
TOKEN_UNIT_TYPES = frozenset({UNIT_TYPE_TOKEN, UNIT_TYPE_NATIVE, UNIT_TYPE_WRAPPED_NATIVE})

# USD amounts and normalised oracle prices are fixed-point with 18 decimals.
PRICE_DECIMALS = 18

DEFAULT_TOKEN_DECIMALS = 18

SECONDS_PER_DAY = 86400

ZERO = Decimal("0")


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]

# Mapping from unit symbol to quantity held in a single wallet.
BalanceMap = Dict[str, Decimal]

# Internal state for a unit (pool tables, loan book tables, token metadata).
UnitState = Dict[str, Any]


# ============================================================================
# ROUNDING
# ============================================================================

def quantum(places: int) -> Decimal:
    """Smallest representable step for the given number of decimal places."""
    return Decimal(1).scaleb(-places)


def round_down(value: Decimal, places: int) -> Decimal:
    """Truncate toward zero at `places` decimals (never in the borrower's favour on proceeds)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(quantum(places), rounding=ROUND_DOWN)


def round_up(value: Decimal, places: int) -> Decimal:
    """Round away from zero at `places` decimals (used for requirements and amounts owed)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(quantum(places), rounding=ROUND_UP)


def to_decimal(value: Any) -> Decimal:
    """Convert int/str/float input to Decimal via its string form."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Pool and loan book functions accept a LedgerView to declare that they only
    read state. The Ledger implements this protocol but also provides mutation
    methods. For testing, FakeView provides a truly immutable implementation.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a unit in a wallet (Decimal("0") if none)."""
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Return a copy of the unit's internal state."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def get_allowance(self, owner: str, spender: str, unit_symbol: str) -> Decimal:
        """Return how much `spender` may still move out of `owner` for a unit."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    REJECTED: Transaction failed validation (balance floor, allowance,
              registration). Nothing was applied.
    """
    APPLIED = "applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    USER_ACTION = "user_action"   # Depositor or borrower call
    PROTOCOL = "protocol"         # Loan book orchestration (issue, repay, recall)
    KEEPER = "keeper"             # Recall keeper sweep
    ADMIN = "admin"               # Registration and configuration
    SYSTEM = "system"             # Issuance, faucet, initial setup


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered with the ledger."""
    pass


class TransferFailed(LedgerError):
    """Raised when the ledger rejects a transaction (balance floor, allowance, registration)."""
    pass


class PriceUnavailable(LedgerError):
    """Raised when the oracle has no price for a token."""
    pass


# Validation errors: rejected before any state is read for the operation.

class ValidationError(LedgerError):
    """Malformed request: zero amounts, bad durations, unknown tokens."""
    pass


class InvalidAmount(ValidationError):
    pass


class ZeroAmount(ValidationError):
    pass


class ZeroDuration(ValidationError):
    pass


class DurationTooLong(ValidationError):
    pass


class UnknownCollateralToken(ValidationError):
    pass


class NotNativeLiquidityProvider(ValidationError):
    pass


class NativeValueMismatch(ValidationError):
    pass


class InvalidConfiguration(ValidationError):
    pass


# Authorization errors.

class AuthorizationError(LedgerError):
    """Caller lacks an allowance or is not the identity allowed to act."""
    pass


class InsufficientAllowance(AuthorizationError):
    pass


class PoolAuthorityMismatch(AuthorizationError):
    pass


class NotAuthorized(AuthorizationError):
    pass


# State errors.

class LoanStateError(LedgerError):
    """Operation not allowed in the current loan or deposit state."""
    pass


class NoActiveLoan(LoanStateError):
    pass


class LoanNotFound(LoanStateError):
    pass


class LoanNotActive(LoanStateError):
    pass


class NotYetOverdue(LoanStateError):
    pass


class LoanStillHealthy(LoanStateError):
    pass


class BorrowerHasActiveLoan(LoanStateError):
    pass


class StillLocked(LoanStateError):
    pass


class NothingLocked(LoanStateError):
    pass


class CollateralStillLocked(LoanStateError):
    pass


# Liquidity errors: distinct so callers can top up collateral or wait for liquidity.

class LiquidityError(LedgerError):
    """Pool or collateral cannot cover the request."""
    pass


class InsufficientPoolLiquidity(LiquidityError):
    pass


class InsufficientCollateral(LiquidityError):
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Wallet or component that triggered the transaction
        unit_symbol: Pool or loan book the transaction acts on (if applicable)
        event_type: Specific event (e.g., "LOAN_CREATED", "LOAN_RECALLED")
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.unit_symbol:
            parts.append(f"unit={self.unit_symbol}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# UNIT STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Record of a unit state change with complete before/after snapshots.

    Attributes:
        unit: Symbol of the unit whose state changed
        old_state: Complete state before the change
        new_state: Complete state after the change
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Fields that differ between old and new state, as (old, new) pairs."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            if old.get(key) != new.get(key):
                changes[key] = (old.get(key), new.get(key))
        return changes


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (finite, strictly positive Decimal).
        unit_symbol: The token being transferred.
        source: The wallet debited.
        dest: The wallet credited.
        contract_id: Identifier of the operation generating this move.
        spender: Wallet pulling the funds under an allowance. None when the
                 source itself initiates the transfer.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    spender: Optional[str] = None

    def __post_init__(self):
        for label in ('source', 'dest', 'unit_symbol', 'contract_id'):
            text = getattr(self, label)
            if not text or not text.strip():
                raise ValueError(f"Move {label} cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity).__name__}")
        if not self.quantity.is_finite():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        via = f" via {self.spender}" if self.spender and self.spender != self.source else ""
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest}{via})"


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction specification before execution - represents INTENT.

    Built by pool and loan book functions and submitted to the ledger, which
    validates every move before applying anything.

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of unit state changes (with old_state and new_state)
        origin: Who/what created this transaction and why
        timestamp: When this pending transaction was created
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves and no state deltas."""
        return not self.moves and not self.state_changes

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} deltas, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Stamp moves and state changes with the view's time.

    State snapshots are deep-copied so later edits by the caller cannot
    leak into the pending transaction. Without an origin the transaction
    is attributed to SYSTEM (faucets and setup).

        ledger.execute(build_transaction(ledger, [
            Move(Decimal("1000"), "DAI", SYSTEM_WALLET, "alice", "faucet")
        ]))
    """
    changes = tuple(
        UnitStateChange(sc.unit, copy.deepcopy(sc.old_state), copy.deepcopy(sc.new_state))
        for sc in (state_changes or ())
    )
    return PendingTransaction(
        moves=tuple(moves),
        state_changes=changes,
        origin=origin or TransactionOrigin(OriginType.SYSTEM, SYSTEM_WALLET),
        timestamp=view.current_time,
    )


class TransactionDraft:
    """
    Accumulates the moves and unit state edits of one atomic operation.

    Several pool and loan book steps contribute to a single transaction
    (e.g. a recall seizes from a pool, pays the treasury, credits the pool
    and rewrites the loan book). Each step reads and edits working copies
    of unit state through `state()`; `build()` emits one UnitStateChange
    per touched unit with the original snapshot as old_state.
    """

    def __init__(self, view: LedgerView):
        self.view = view
        self.moves: List[Move] = []
        self._old: Dict[str, UnitState] = {}
        self._new: Dict[str, UnitState] = {}

    @property
    def current_time(self) -> datetime:
        return self.view.current_time

    def state(self, symbol: str) -> UnitState:
        """Working copy of a unit's state; edits are kept until build()."""
        if symbol not in self._new:
            original = self.view.get_unit_state(symbol)
            self._old[symbol] = original
            self._new[symbol] = copy.deepcopy(original)
        return self._new[symbol]

    def move(
        self,
        quantity: Decimal,
        unit_symbol: str,
        source: str,
        dest: str,
        contract_id: str,
        spender: Optional[str] = None,
    ) -> None:
        """Append a move. Zero quantities (e.g. an empty reward share) are skipped."""
        if quantity <= 0:
            return
        self.moves.append(Move(quantity, unit_symbol, source, dest, contract_id, spender))

    def build(self, origin: TransactionOrigin) -> PendingTransaction:
        changes = [
            UnitStateChange(unit=symbol, old_state=self._old[symbol], new_state=self._new[symbol])
            for symbol in self._new
            if self._old[symbol] != self._new[symbol]
        ]
        return build_transaction(self.view, self.moves, changes, origin)


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of unit state changes
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes:
            raise ValueError("Transaction must have moves or state_changes")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        width = 100
        rule = "─" * width

        def row(text: str) -> str:
            text = text if len(text) <= width else text[:width - 3] + "..."
            return f"│{text.ljust(width)}│"

        lines = ["", f"┌{rule}┐", row(f" {self.exec_id}  #{self.sequence_number}  {self.origin}"),
                 row(f"   at {self.execution_time}"), f"├{rule}┤"]
        lines.extend(row(f"   {m!r}") for m in self.moves)
        for sc in self.state_changes:
            lines.append(row(f"   {sc.unit}: {', '.join(sorted(sc.changed_fields()))}"))
        lines.append(f"└{rule}┘")
        return "\n".join(lines)


def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a mutable state dict to a tuple of (key, value) pairs sorted by key."""
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    """Convert a frozen state representation back to a mutable dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit registered in the ledger.

    Tokens are fungible units that wallets hold. Liquidity pools and the loan
    book are stateful units that nobody holds; their tables live in `state`.

    Attributes:
        symbol: Short identifier (e.g., "DAI", "LP-DAI").
        name: Human-readable name.
        unit_type: TOKEN, NATIVE, WRAPPED_NATIVE, LIQUIDITY_POOL or LOAN_BOOK.
        min_balance: Minimum allowed balance in any non-system wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Token precision; balances are truncated to it.
        _frozen_state: Internal frozen state representation.
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> UnitState:
        """The unit's state as a new mutable dictionary."""
        return _thaw_state(self._frozen_state)

    @property
    def is_token(self) -> bool:
        return self.unit_type in TOKEN_UNIT_TYPES

    def round(self, value: Decimal) -> Decimal:
        """Truncate a value to this unit's precision (unchanged if decimal_places is None)."""
        if self.decimal_places is None:
            return value
        return round_down(value, self.decimal_places)


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def token(symbol: str, name: str, decimals: int = DEFAULT_TOKEN_DECIMALS) -> Unit:
    """
    Create a fungible ERC20-style token unit.

    Args:
        symbol: Token symbol (e.g., "DAI", "USDT").
        name: Full name of the token.
        decimals: Number of decimal places (18 for DAI, 6 for USDT).
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_TOKEN,
        decimal_places=decimals,
        _frozen_state=_freeze_state({'decimals': decimals}),
    )


def native_token(symbol: str = "ETH", name: str = "Ether", decimals: int = 18) -> Unit:
    """Create the chain's native value unit (transferred without allowances)."""
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_NATIVE,
        decimal_places=decimals,
        _frozen_state=_freeze_state({'decimals': decimals}),
    )
