"""
liquidity_pool.py - Per-token Liquidity Pools

A liquidity pool is a stateful unit whose symbol doubles as the wallet that
holds its token. Depositors lock funds for a minimum duration; the loan
book (the pool's controller) draws principal out and brings repayments,
rewards and seized collateral back.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS: PoolState, a typed snapshot of the pool's tables.

2. ADAPTER: load_pool() is the only reader of pool state for calculations.

3. DRAFT STEPS (lock_into, reserve_collateral, release_collateral,
   draw_for_loan, return_repayment, credit_income, take_repayment,
   write_off): append moves and edit the pool's working state inside a
   TransactionDraft so several steps, possibly across several pools,
   commit as one transaction.

4. CONVENIENCE FUNCTIONS (compute_*): one step wrapped in its own
   PendingTransaction, for depositor operations and direct controller calls.

Pool state:
    token           - token held by the pool
    native          - whether the token is the native-value wrapper
    controller      - only identity allowed to draw/return/take
    total_locked    - sum of amount_locked
    amount_locked   - depositor -> locked amount
    locking_time    - depositor -> earliest withdrawal time
    reserved        - deposits the loan book holds as collateral for active loans
    lent_out        - principal currently drawn for loans
    income          - cumulative rewards, seizure shares and forfeited score
    written_off     - principal of recalled loans that never came back

Accounting identity (holds after every transaction):
    balance(pool) + lent_out + written_off == total_locked + income

Reserved deposits are never lent out or extracted, so a recall can always
seize them:
    balance(pool) >= reserved
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from ..core import (
    LedgerView, PendingTransaction, Unit, TransactionDraft, TransactionOrigin, OriginType,
    UNIT_TYPE_LIQUIDITY_POOL, UNIT_TYPE_WRAPPED_NATIVE, ZERO,
    InvalidAmount, InsufficientAllowance, PoolAuthorityMismatch,
    StillLocked, NothingLocked, CollateralStillLocked, InsufficientPoolLiquidity,
    NotNativeLiquidityProvider, ValidationError,
    _freeze_state,
)
from .native_wrapper import wrap, unwrap


def pool_symbol(token: str) -> str:
    """Symbol (and wallet id) of the pool for a token."""
    return f"LP-{token}"


def create_liquidity_pool(
    token: str,
    controller: Optional[str] = None,
    native: bool = False,
    name: Optional[str] = None,
) -> Unit:
    """
    Create a liquidity pool unit for a token.

    The pool's wallet (same id as its symbol) must be registered with the
    ledger before it can hold funds.

    Args:
        token: Token the pool holds.
        controller: Identity allowed to draw and return funds (the loan book).
        native: True if `token` is the native-value wrapper; enables lock_native.
        name: Human-readable name (default: "<token> Liquidity Pool").
    """
    if not token:
        raise ValidationError("Pool token cannot be empty")
    return Unit(
        symbol=pool_symbol(token),
        name=name or f"{token} Liquidity Pool",
        unit_type=UNIT_TYPE_LIQUIDITY_POOL,
        _frozen_state=_freeze_state({
            'token': token,
            'native': native,
            'controller': controller,
            'total_locked': ZERO,
            'amount_locked': {},
            'locking_time': {},
            'reserved': ZERO,
            'lent_out': ZERO,
            'income': ZERO,
            'written_off': ZERO,
        }),
    )


@dataclass(frozen=True, slots=True)
class PoolState:
    """Immutable snapshot of a pool's tables."""
    symbol: str
    token: str
    native: bool
    controller: Optional[str]
    total_locked: Decimal
    amount_locked: Mapping[str, Decimal]
    locking_time: Mapping[str, datetime]
    reserved: Decimal
    lent_out: Decimal
    income: Decimal
    written_off: Decimal

    def deposit_of(self, depositor: str) -> Decimal:
        return self.amount_locked.get(depositor, ZERO)

    def unlock_time_of(self, depositor: str) -> Optional[datetime]:
        return self.locking_time.get(depositor)


def load_pool(view: LedgerView, symbol: str) -> PoolState:
    """
    Load a pool from ledger state as a frozen dataclass.

    Raises:
        ValidationError: If `symbol` is not a liquidity pool.
    """
    if view.get_unit(symbol).unit_type != UNIT_TYPE_LIQUIDITY_POOL:
        raise ValidationError(f"{symbol} is not a liquidity pool")
    raw = view.get_unit_state(symbol)
    return PoolState(
        symbol=symbol,
        token=raw['token'],
        native=raw.get('native', False),
        controller=raw.get('controller'),
        total_locked=raw.get('total_locked', ZERO),
        amount_locked=dict(raw.get('amount_locked', {})),
        locking_time=dict(raw.get('locking_time', {})),
        reserved=raw.get('reserved', ZERO),
        lent_out=raw.get('lent_out', ZERO),
        income=raw.get('income', ZERO),
        written_off=raw.get('written_off', ZERO),
    )


def available_liquidity(view: LedgerView, symbol: str) -> Decimal:
    """Balance the pool can lend or pay out: what it holds minus reserved collateral."""
    state = view.get_unit_state(symbol)
    return view.get_balance(symbol, state['token']) - state.get('reserved', ZERO)


def check_accounting(view: LedgerView, symbol: str) -> Dict[str, Any]:
    """Evaluate the pool accounting identity and the cover of reserved collateral."""
    pool = load_pool(view, symbol)
    balance = view.get_balance(symbol, pool.token)
    assets = balance + pool.lent_out + pool.written_off
    liabilities = pool.total_locked + pool.income
    return {
        'valid': (
            assets == liabilities
            and pool.total_locked == sum(pool.amount_locked.values(), ZERO)
            and ZERO <= pool.reserved <= min(balance, pool.total_locked)
        ),
        'balance': balance,
        'reserved': pool.reserved,
        'assets': assets,
        'liabilities': liabilities,
        'difference': assets - liabilities,
    }


def _origin(symbol: str, source_id: str, event_type: str,
            origin_type: OriginType = OriginType.USER_ACTION) -> TransactionOrigin:
    return TransactionOrigin(origin_type, source_id, unit_symbol=symbol, event_type=event_type)


def _require_positive(amount: Decimal) -> None:
    if not isinstance(amount, Decimal) or not amount.is_finite():
        raise InvalidAmount(f"Amount must be a finite Decimal, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount("Amount must be larger than zero")


def _require_controller(state: Dict[str, Any], symbol: str, caller: str) -> None:
    controller = state.get('controller')
    if controller is None or caller != controller:
        raise PoolAuthorityMismatch(f"{caller} is not the controller of {symbol}")


def _token_round(view: LedgerView, token: str, amount: Decimal) -> Decimal:
    rounded = view.get_unit(token).round(amount)
    if rounded != amount:
        raise InvalidAmount(f"{amount} exceeds the precision of {token}")
    return amount


# ============================================================================
# DRAFT STEPS
# ============================================================================

def lock_into(draft: TransactionDraft, symbol: str, depositor: str, amount: Decimal,
              lock_duration: timedelta, native: bool = False) -> None:
    """
    Credit a deposit to `depositor` and restart its lock period.

    With native=True the deposit arrives as native value and is wrapped;
    otherwise it is pulled from the depositor under the pool's allowance.
    """
    _require_positive(amount)
    state = draft.state(symbol)
    token = state['token']
    _token_round(draft.view, token, amount)
    contract_id = f"{symbol}:lock"

    if native:
        if not state.get('native') or draft.view.get_unit(token).unit_type != UNIT_TYPE_WRAPPED_NATIVE:
            raise NotNativeLiquidityProvider("Not ETH LP")
        wrap(draft, token, depositor, symbol, amount, contract_id)
    else:
        allowed = draft.view.get_allowance(depositor, symbol, token)
        if allowed < amount:
            raise InsufficientAllowance(
                f"{depositor} approved {allowed} {token} for {symbol}, needs {amount}"
            )
        draft.move(amount, token, depositor, symbol, contract_id, spender=symbol)

    state['amount_locked'][depositor] = state['amount_locked'].get(depositor, ZERO) + amount
    state['total_locked'] = state['total_locked'] + amount
    state['locking_time'][depositor] = draft.current_time + lock_duration


def reserve_collateral(draft: TransactionDraft, symbol: str, caller: str, amount: Decimal) -> None:
    """Hold back deposited funds that now back a loan."""
    state = draft.state(symbol)
    _require_controller(state, symbol, caller)
    _require_positive(amount)
    reserved = state['reserved'] + amount
    if reserved > state['total_locked']:
        raise InvalidAmount(f"Cannot reserve {reserved} of {symbol}: only {state['total_locked']} locked")
    if reserved > draft.view.get_balance(symbol, state['token']):
        raise InsufficientPoolLiquidity("Not enough liquidity")
    state['reserved'] = reserved


def release_collateral(draft: TransactionDraft, symbol: str, caller: str, amount: Decimal) -> None:
    """Return reserved funds to the lendable balance once their loan closes."""
    state = draft.state(symbol)
    _require_controller(state, symbol, caller)
    _require_positive(amount)
    if amount > state['reserved']:
        raise InvalidAmount(f"Cannot release {amount}: only {state['reserved']} reserved in {symbol}")
    state['reserved'] = state['reserved'] - amount


def draw_for_loan(draft: TransactionDraft, symbol: str, caller: str,
                  amount: Decimal, recipient: str) -> None:
    """Send loan principal out of the pool. Reserved collateral is never drawn."""
    state = draft.state(symbol)
    _require_controller(state, symbol, caller)
    _require_positive(amount)
    token = state['token']
    if draft.view.get_balance(symbol, token) - state['reserved'] < amount:
        raise InsufficientPoolLiquidity("Not enough liquidity")
    draft.move(amount, token, symbol, recipient, f"{symbol}:draw")
    state['lent_out'] = state['lent_out'] + amount


def _pull(draft: TransactionDraft, symbol: str, caller: str, token: str,
          amount: Decimal, payer: str, contract_id: str) -> None:
    if payer == caller:
        draft.move(amount, token, payer, symbol, contract_id)
        return
    allowed = draft.view.get_allowance(payer, caller, token)
    if allowed < amount:
        raise InsufficientAllowance(f"{payer} approved {allowed} {token} for {caller}, needs {amount}")
    draft.move(amount, token, payer, symbol, contract_id, spender=caller)


def return_repayment(draft: TransactionDraft, symbol: str, caller: str,
                     amount: Decimal, payer: str) -> None:
    """Bring repaid principal back into the pool."""
    state = draft.state(symbol)
    _require_controller(state, symbol, caller)
    _require_positive(amount)
    if amount > state['lent_out']:
        raise InvalidAmount(f"Cannot return {amount}: only {state['lent_out']} lent out of {symbol}")
    _pull(draft, symbol, caller, state['token'], amount, payer, f"{symbol}:return")
    state['lent_out'] = state['lent_out'] - amount


def credit_income(draft: TransactionDraft, symbol: str, caller: str,
                  amount: Decimal, payer: str) -> None:
    """Pay a reward, seizure share or forfeited score into the pool as income."""
    state = draft.state(symbol)
    _require_controller(state, symbol, caller)
    if amount <= 0:
        return
    _pull(draft, symbol, caller, state['token'], amount, payer, f"{symbol}:income")
    state['income'] = state['income'] + amount


def take_repayment(draft: TransactionDraft, symbol: str, caller: str,
                   amount: Decimal, depositor: str) -> None:
    """
    Drain part of a depositor's locked funds to the controller.

    Used when a recalled borrower's deposit is seized: the depositor's
    amount_locked and total_locked both shrink by `amount`.
    """
    state = draft.state(symbol)
    _require_controller(state, symbol, caller)
    _require_positive(amount)
    locked = state['amount_locked'].get(depositor, ZERO)
    if locked < amount:
        raise InvalidAmount(f"{depositor} has only {locked} locked in {symbol}, cannot take {amount}")
    draft.move(amount, state['token'], symbol, caller, f"{symbol}:take")
    remaining = locked - amount
    if remaining == 0:
        del state['amount_locked'][depositor]
    else:
        state['amount_locked'][depositor] = remaining
    state['total_locked'] = state['total_locked'] - amount


def write_off(draft: TransactionDraft, symbol: str, caller: str, principal: Decimal) -> None:
    """Record principal of a recalled loan as lost."""
    state = draft.state(symbol)
    _require_controller(state, symbol, caller)
    state['lent_out'] = state['lent_out'] - principal
    state['written_off'] = state['written_off'] + principal


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def compute_lock(view: LedgerView, symbol: str, depositor: str, amount: Decimal,
                 lock_duration: timedelta) -> PendingTransaction:
    """
    Lock `amount` of the pool's token for `depositor`.

    Raises:
        InvalidAmount: If amount is zero or negative.
        InsufficientAllowance: If the pool may not pull `amount`.
    """
    draft = TransactionDraft(view)
    lock_into(draft, symbol, depositor, amount, lock_duration)
    return draft.build(_origin(symbol, depositor, "LIQUIDITY_LOCKED"))


def compute_lock_native(view: LedgerView, symbol: str, depositor: str, amount: Decimal,
                        lock_duration: timedelta) -> PendingTransaction:
    """
    Lock native value, wrapped into the pool's token.

    Raises:
        NotNativeLiquidityProvider: If the pool does not hold the native wrapper.
        InvalidAmount: If amount is zero or negative.
    """
    if not view.get_unit_state(symbol).get('native'):
        raise NotNativeLiquidityProvider("Not ETH LP")
    draft = TransactionDraft(view)
    lock_into(draft, symbol, depositor, amount, lock_duration, native=True)
    return draft.build(_origin(symbol, depositor, "LIQUIDITY_LOCKED"))


def compute_extract(view: LedgerView, symbol: str, depositor: str,
                    reserved: Decimal = ZERO) -> PendingTransaction:
    """
    Withdraw a depositor's entire locked balance.

    Args:
        reserved: Part of the deposit currently backing an active loan.

    Raises:
        StillLocked: Before the depositor's locking time.
        NothingLocked: If the depositor has nothing locked.
        CollateralStillLocked: If part of the deposit backs an active loan.
        InsufficientPoolLiquidity: If too much of the pool is lent out or reserved.
    """
    draft = TransactionDraft(view)
    state = draft.state(symbol)
    unlock_at = state['locking_time'].get(depositor)
    if unlock_at is not None and view.current_time < unlock_at:
        raise StillLocked(f"{depositor} cannot extract from {symbol} before {unlock_at}")
    amount = state['amount_locked'].get(depositor, ZERO)
    if amount == 0:
        raise NothingLocked(f"{depositor} has nothing locked in {symbol}")
    if reserved > 0:
        raise CollateralStillLocked(f"{reserved} of {depositor}'s deposit backs an active loan")
    token = state['token']
    if view.get_balance(symbol, token) - state['reserved'] < amount:
        raise InsufficientPoolLiquidity("Not enough liquidity")

    contract_id = f"{symbol}:extract"
    if state.get('native'):
        unwrap(draft, token, symbol, depositor, amount, contract_id)
    else:
        draft.move(amount, token, symbol, depositor, contract_id)
    del state['amount_locked'][depositor]
    state['locking_time'].pop(depositor, None)
    state['total_locked'] = state['total_locked'] - amount
    return draft.build(_origin(symbol, depositor, "LIQUIDITY_EXTRACTED"))


def compute_draw_for_loan(view: LedgerView, symbol: str, caller: str,
                          amount: Decimal, recipient: str) -> PendingTransaction:
    draft = TransactionDraft(view)
    draw_for_loan(draft, symbol, caller, amount, recipient)
    return draft.build(_origin(symbol, caller, "LIQUIDITY_DRAWN", OriginType.PROTOCOL))


def compute_return_repayment(view: LedgerView, symbol: str, caller: str,
                             amount: Decimal, payer: str) -> PendingTransaction:
    draft = TransactionDraft(view)
    return_repayment(draft, symbol, caller, amount, payer)
    return draft.build(_origin(symbol, caller, "LIQUIDITY_RETURNED", OriginType.PROTOCOL))


def compute_take_repayment(view: LedgerView, symbol: str, caller: str,
                           amount: Decimal, depositor: str) -> PendingTransaction:
    draft = TransactionDraft(view)
    take_repayment(draft, symbol, caller, amount, depositor)
    return draft.build(_origin(symbol, caller, "LIQUIDITY_TAKEN", OriginType.PROTOCOL))


def compute_set_controller(view: LedgerView, symbol: str, controller: str,
                           changed_by: str = "admin") -> PendingTransaction:
    """Point the pool at a new controller identity."""
    if not controller:
        raise ValidationError("Controller cannot be empty")
    draft = TransactionDraft(view)
    draft.state(symbol)['controller'] = controller
    return draft.build(_origin(symbol, changed_by, "CONTROLLER_SET", OriginType.ADMIN))
