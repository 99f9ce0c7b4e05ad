"""
loan_book.py - Collateralized Loan Book

The loan book is the state machine behind every loan: it validates loan
requests, values collateral across all registered tokens in USD, opens,
tracks and closes loans, and on repayment or recall moves value between
the liquidity pools, the treasury, the recaller and the borrower's crypto
score. The book's symbol doubles as its wallet: it controls every
registered pool and holds the tokens backing users' crypto scores.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES (explicit inputs):
   - Loan: one loan record (terms, collateral, lifecycle fields)
   - CollateralTranche: collateral taken from one token for one loan

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - No LedgerView, no hidden state
   - calculate_amount_due, calculate_required_collateral_usd,
     calculate_interest_rate, calculate_collateral_allocation

3. ADAPTER FUNCTIONS (load_loan, get_*):
   - The only readers of loan book state

4. CONVENIENCE FUNCTIONS (compute_*):
   - Validate against a view, then build one PendingTransaction that
     touches the book, the pools and the wallets together

Loan lifecycle:
    ACTIVE --repay--> PAID
    ACTIVE --recall (overdue or undercollateralized)--> RECALLED
PAID and RECALLED are terminal.

Key Formulas:
    required_usd = amount * price * collateral_ratio / 100          (rounded up)
    amount_due   = amount * (1 + rate_per_day * days_to_repay)       (rounded up)
    profit       = amount_due - amount
    score        = profit / 2                                        (rounded down)
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_UP
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..config import LendingConfig
from ..core import (
    LedgerView, PendingTransaction, Unit, TransactionDraft, TransactionOrigin, OriginType,
    UNIT_TYPE_LOAN_BOOK, UNIT_TYPE_LIQUIDITY_POOL, UNIT_TYPE_WRAPPED_NATIVE,
    PRICE_DECIMALS, SECONDS_PER_DAY, ZERO,
    round_up, _freeze_state,
    InvalidAmount, ZeroAmount, ZeroDuration, DurationTooLong, UnknownCollateralToken,
    NotNativeLiquidityProvider, NativeValueMismatch, InsufficientAllowance,
    NoActiveLoan, LoanNotFound, LoanNotActive, NotYetOverdue, LoanStillHealthy,
    BorrowerHasActiveLoan, InsufficientPoolLiquidity, InsufficientCollateral,
    ValidationError, UnitNotRegistered,
)
from ..price_oracle import PriceSnapshot
from ..rewards import split_repayment_profit, split_seized_collateral
from .liquidity_pool import (
    available_liquidity, reserve_collateral, release_collateral,
    draw_for_loan, return_repayment, credit_income, take_repayment, write_off,
)
from .native_wrapper import wrap, unwrap


LOAN_BOOK = "loan_book"


class LoanState(str, Enum):
    """State of a loan."""
    ACTIVE = "active"       # Principal drawn, collateral locked
    PAID = "paid"           # Repaid with interest, collateral released
    RECALLED = "recalled"   # Collateral seized after default


# =============================================================================
# FROZEN DATACLASSES
# =============================================================================

@dataclass(frozen=True, slots=True)
class Loan:
    """
    Immutable loan record.

    score_collateral and deposit_collateral map each collateral token to the
    amount locked from the borrower's crypto score and pool deposit.
    """
    loan_id: int
    owner: str
    token: str
    amount: Decimal
    days_to_repay: int
    interest_rate_per_day: Decimal
    amount_due: Decimal
    issued_at: datetime
    state: LoanState
    native: bool = False
    score_collateral: Mapping[str, Decimal] = field(default_factory=dict)
    deposit_collateral: Mapping[str, Decimal] = field(default_factory=dict)
    closed_at: Optional[datetime] = None
    amount_repaid: Decimal = ZERO
    recalled_by: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.state, LoanState):
            object.__setattr__(self, 'state', LoanState(self.state))

    @property
    def due_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.days_to_repay * SECONDS_PER_DAY)

    @property
    def is_active(self) -> bool:
        return self.state == LoanState.ACTIVE

    @property
    def collateral(self) -> Dict[str, Decimal]:
        """Total collateral locked per token (score plus deposit)."""
        totals: Dict[str, Decimal] = {}
        for source in (self.score_collateral, self.deposit_collateral):
            for token, amount in source.items():
                totals[token] = totals.get(token, ZERO) + amount
        return totals

    @property
    def profit(self) -> Decimal:
        return self.amount_due - self.amount

    def is_overdue(self, now: datetime) -> bool:
        return self.is_active and now >= self.due_at


@dataclass(frozen=True, slots=True)
class CollateralTranche:
    """Collateral taken from one token: score part, deposit part and its USD value."""
    token: str
    from_score: Decimal
    from_deposit: Decimal
    usd_value: Decimal

    @property
    def amount(self) -> Decimal:
        return self.from_score + self.from_deposit


@dataclass(frozen=True, slots=True)
class FreeCollateral:
    """Unlocked collateral a user holds in one token."""
    token: str
    score: Decimal
    deposit: Decimal
    decimal_places: int

    @property
    def total(self) -> Decimal:
        return self.score + self.deposit


# =============================================================================
# UNIT CREATION
# =============================================================================

def create_loan_book(symbol: str = LOAN_BOOK, name: str = "Loan Book") -> Unit:
    """
    Create an empty loan book unit.

    The book's wallet (same id as its symbol) must be registered with the
    ledger; it holds crypto-score tokens and passes repayments through.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_LOAN_BOOK,
        _frozen_state=_freeze_state({
            'collateral_tokens': [],
            'pools': {},
            'next_loan_id': 1,
            'loan_ids': [],
            'loans': {},
            'active_loan': {},
            'last_closed_state': {},
            'crypto_score': {},
            'locked_score': {},
            'locked_deposit': {},
            'active_funds_lent': {},
            'user_active_funds_lent': {},
            'total_funds_lent': {},
        }),
    )


def to_state_dict(loan: Loan) -> Dict[str, Any]:
    """Convert a Loan to its stored form."""
    return {
        'loan_id': loan.loan_id,
        'owner': loan.owner,
        'token': loan.token,
        'amount': loan.amount,
        'days_to_repay': loan.days_to_repay,
        'interest_rate_per_day': loan.interest_rate_per_day,
        'amount_due': loan.amount_due,
        'issued_at': loan.issued_at,
        'state': loan.state.value,
        'native': loan.native,
        'score_collateral': dict(loan.score_collateral),
        'deposit_collateral': dict(loan.deposit_collateral),
        'closed_at': loan.closed_at,
        'amount_repaid': loan.amount_repaid,
        'recalled_by': loan.recalled_by,
    }


def _loan_from_dict(raw: Dict[str, Any]) -> Loan:
    return Loan(
        loan_id=raw['loan_id'],
        owner=raw['owner'],
        token=raw['token'],
        amount=raw['amount'],
        days_to_repay=raw['days_to_repay'],
        interest_rate_per_day=raw['interest_rate_per_day'],
        amount_due=raw['amount_due'],
        issued_at=raw['issued_at'],
        state=LoanState(raw['state']),
        native=raw.get('native', False),
        score_collateral=dict(raw.get('score_collateral', {})),
        deposit_collateral=dict(raw.get('deposit_collateral', {})),
        closed_at=raw.get('closed_at'),
        amount_repaid=raw.get('amount_repaid', ZERO),
        recalled_by=raw.get('recalled_by'),
    )


# =============================================================================
# PURE CALCULATIONS
# =============================================================================

def calculate_amount_due(principal: Decimal, rate_per_day: Decimal, days: int,
                         decimal_places: int) -> Decimal:
    """
    Principal plus simple interest for the full term, rounded up.

    Interest is always charged for the agreed term, however early the loan
    is repaid.

    Example:
        calculate_amount_due(Decimal("100"), Decimal("0.004"), 3, 18) -> 101.2
    """
    return round_up(principal * (1 + rate_per_day * days), decimal_places)


def calculate_required_collateral_usd(amount: Decimal, price: Decimal, collateral_ratio: Decimal,
                                      price_decimals: int = PRICE_DECIMALS) -> Decimal:
    """USD collateral required for a loan of `amount` at `price`, rounded up."""
    return round_up(amount * price * collateral_ratio / 100, price_decimals)


def calculate_interest_rate(config: LendingConfig, previous_state: Optional[LoanState]) -> Decimal:
    """Daily rate for a new loan: base rate, plus penalization after a recall."""
    if previous_state == LoanState.RECALLED:
        return config.interest_rate_per_day + config.penalization_rate_per_day
    return config.interest_rate_per_day


def calculate_collateral_allocation(
    required_usd: Decimal,
    free: Sequence[FreeCollateral],
    prices: PriceSnapshot,
) -> List[CollateralTranche]:
    """
    Choose the collateral that covers `required_usd`.

    Walks `free` in order (registration order of the collateral tokens).
    From each token it takes the smaller of what is free and what covers the
    remaining requirement (rounded up to the token's precision), consuming
    crypto score before pool deposit, and stops once the requirement is met.

    Raises:
        InsufficientCollateral: If all free collateral together falls short.
    """
    remaining = required_usd
    tranches: List[CollateralTranche] = []
    for entry in free:
        if remaining <= 0:
            break
        if entry.total <= 0:
            continue
        needed = prices.token_amount(entry.token, remaining, entry.decimal_places, ROUND_UP)
        take = min(needed, entry.total)
        from_score = min(take, entry.score)
        from_deposit = take - from_score
        usd = prices.usd(entry.token, take)
        tranches.append(CollateralTranche(entry.token, from_score, from_deposit, usd))
        remaining -= usd
    if remaining > 0:
        raise InsufficientCollateral("combined collateral and Crypto Score isn't enough")
    return tranches


# =============================================================================
# READERS
# =============================================================================

def _nested(table: Dict[str, Dict[str, Decimal]], token: str, user: str) -> Decimal:
    return table.get(token, {}).get(user, ZERO)


def _adjust(table: Dict[str, Dict[str, Decimal]], token: str, user: str, delta: Decimal) -> None:
    row = table.setdefault(token, {})
    value = row.get(user, ZERO) + delta
    if value < 0:
        raise ValueError(f"Negative balance in loan book table for {user}/{token}: {value}")
    if value == 0:
        row.pop(user, None)
    else:
        row[user] = value


def load_loan(view: LedgerView, book: str, loan_id: int) -> Loan:
    """
    Load a loan by id.

    Raises:
        LoanNotFound: If no loan has this id.
    """
    loans = view.get_unit_state(book)['loans']
    if loan_id not in loans:
        raise LoanNotFound(f"Loan {loan_id} does not exist")
    return _loan_from_dict(loans[loan_id])


def get_loan_ids(view: LedgerView, book: str) -> List[int]:
    return list(view.get_unit_state(book)['loan_ids'])


def get_last_loan_id(view: LedgerView, book: str) -> int:
    """Id of the most recently issued loan (0 if none)."""
    return view.get_unit_state(book)['next_loan_id'] - 1


def get_active_loan(view: LedgerView, book: str, user: str) -> Optional[Loan]:
    state = view.get_unit_state(book)
    loan_id = state['active_loan'].get(user)
    if loan_id is None:
        return None
    return _loan_from_dict(state['loans'][loan_id])


def get_collateral_tokens(view: LedgerView, book: str) -> List[str]:
    return list(view.get_unit_state(book)['collateral_tokens'])


def get_pool_for(view: LedgerView, book: str, token: str) -> str:
    pools = view.get_unit_state(book)['pools']
    if token not in pools:
        raise UnknownCollateralToken(f"{token} is not a registered collateral token")
    return pools[token]


def get_crypto_score(view: LedgerView, book: str, token: str, user: str) -> Decimal:
    return _nested(view.get_unit_state(book)['crypto_score'], token, user)


def get_locked_collateral(view: LedgerView, book: str, token: str, user: str) -> Decimal:
    """Score plus deposit locked for the user's active loan in `token`."""
    state = view.get_unit_state(book)
    return _nested(state['locked_score'], token, user) + _nested(state['locked_deposit'], token, user)


def get_locked_deposit(view: LedgerView, book: str, token: str, user: str) -> Decimal:
    """Part of the user's pool deposit reserved as collateral."""
    return _nested(view.get_unit_state(book)['locked_deposit'], token, user)


def get_active_funds_lent(view: LedgerView, book: str, token: str) -> Decimal:
    return view.get_unit_state(book)['active_funds_lent'].get(token, ZERO)


def get_user_active_funds_lent(view: LedgerView, book: str, token: str, user: str) -> Decimal:
    return _nested(view.get_unit_state(book)['user_active_funds_lent'], token, user)


def get_total_funds_lent(view: LedgerView, book: str, token: str) -> Decimal:
    return view.get_unit_state(book)['total_funds_lent'].get(token, ZERO)


def _deposit(view: LedgerView, pool: str, user: str) -> Decimal:
    return view.get_unit_state(pool)['amount_locked'].get(user, ZERO)


def get_user_collateral(view: LedgerView, book: str, token: str, user: str) -> Decimal:
    """Free collateral: pool deposit plus crypto score minus what is locked."""
    state = view.get_unit_state(book)
    pool = state['pools'][token]
    held = _deposit(view, pool, user) + _nested(state['crypto_score'], token, user)
    return held - _nested(state['locked_score'], token, user) - _nested(state['locked_deposit'], token, user)


def free_collateral(view: LedgerView, book: str, user: str) -> List[FreeCollateral]:
    """Free collateral per registered token, in registration order."""
    state = view.get_unit_state(book)
    result = []
    for token in state['collateral_tokens']:
        pool = state['pools'][token]
        score = _nested(state['crypto_score'], token, user) - _nested(state['locked_score'], token, user)
        deposit = _deposit(view, pool, user) - _nested(state['locked_deposit'], token, user)
        result.append(FreeCollateral(token, score, deposit, view.get_unit(token).decimal_places))
    return result


def find_overdue_loans(view: LedgerView, book: str, now: Optional[datetime] = None) -> List[int]:
    """Ids of active loans whose due time has passed, in id order."""
    now = now or view.current_time
    state = view.get_unit_state(book)
    overdue = []
    for loan_id in sorted(state['active_loan'].values()):
        if _loan_from_dict(state['loans'][loan_id]).is_overdue(now):
            overdue.append(loan_id)
    return overdue


def loan_collateral_usd(loan: Loan, prices: PriceSnapshot) -> Decimal:
    return sum((prices.usd(token, amount) for token, amount in loan.collateral.items()), ZERO)


def is_undercollateralized(loan: Loan, config: LendingConfig, prices: PriceSnapshot) -> bool:
    """True if the loan's locked collateral is worth less than its requirement at current prices."""
    required = calculate_required_collateral_usd(
        loan.amount, prices.price(loan.token), config.collateral_ratio, prices.price_decimals,
    )
    return loan_collateral_usd(loan, prices) < required


def find_undercollateralized_loans(view: LedgerView, book: str, config: LendingConfig,
                                   prices: PriceSnapshot) -> List[int]:
    state = view.get_unit_state(book)
    result = []
    for loan_id in sorted(state['active_loan'].values()):
        if is_undercollateralized(_loan_from_dict(state['loans'][loan_id]), config, prices):
            result.append(loan_id)
    return result


def check_score_backing(view: LedgerView, book: str) -> Dict[str, Any]:
    """Crypto scores per token must equal the book wallet's balance of that token."""
    state = view.get_unit_state(book)
    discrepancies = []
    for token in state['collateral_tokens']:
        scores = sum(state['crypto_score'].get(token, {}).values(), ZERO)
        held = view.get_balance(book, token)
        if scores != held:
            discrepancies.append({'token': token, 'scores': scores, 'held': held})
    return {'valid': not discrepancies, 'discrepancies': discrepancies}


# =============================================================================
# USD VIEWS
# =============================================================================

def _usd_sum(amounts: Mapping[str, Decimal], prices: PriceSnapshot) -> Decimal:
    return sum((prices.usd(token, amount) for token, amount in amounts.items() if amount), ZERO)


def total_collateral_in_usd(view: LedgerView, book: str, user: str, prices: PriceSnapshot) -> Decimal:
    """USD value of the user's deposits plus crypto scores across all tokens, locked or not."""
    state = view.get_unit_state(book)
    holdings = {
        token: _deposit(view, state['pools'][token], user) + _nested(state['crypto_score'], token, user)
        for token in state['collateral_tokens']
    }
    return _usd_sum(holdings, prices)


def user_locked_collateral_in_usd(view: LedgerView, book: str, user: str, prices: PriceSnapshot) -> Decimal:
    return _usd_sum(
        {t: get_locked_collateral(view, book, t, user) for t in get_collateral_tokens(view, book)},
        prices,
    )


def user_active_funds_lent_in_usd(view: LedgerView, book: str, user: str, prices: PriceSnapshot) -> Decimal:
    return _usd_sum(
        {t: get_user_active_funds_lent(view, book, t, user) for t in get_collateral_tokens(view, book)},
        prices,
    )


def active_funds_lent_in_usd(view: LedgerView, book: str, prices: PriceSnapshot) -> Decimal:
    return _usd_sum(dict(view.get_unit_state(book)['active_funds_lent']), prices)


def total_locked_collateral_in_usd(view: LedgerView, book: str, prices: PriceSnapshot) -> Decimal:
    state = view.get_unit_state(book)
    totals = {}
    for token in state['collateral_tokens']:
        totals[token] = (
            sum(state['locked_score'].get(token, {}).values(), ZERO)
            + sum(state['locked_deposit'].get(token, {}).values(), ZERO)
        )
    return _usd_sum(totals, prices)


# =============================================================================
# COMPUTE FUNCTIONS
# =============================================================================

def _origin(book: str, source_id: str, event_type: str,
            origin_type: OriginType = OriginType.PROTOCOL) -> TransactionOrigin:
    return TransactionOrigin(origin_type, source_id, unit_symbol=book, event_type=event_type)


def compute_register_collateral_token(view: LedgerView, book: str, token: str, pool: str,
                                      registered_by: str = "admin") -> PendingTransaction:
    """
    Add a token and its pool to the collateral set (appended to the registration order).

    Raises:
        ValidationError: If the pool does not hold `token` or the token is already registered.
    """
    try:
        pool_unit = view.get_unit(pool)
        view.get_unit(token)
    except UnitNotRegistered as exc:
        raise ValidationError(str(exc))
    if pool_unit.unit_type != UNIT_TYPE_LIQUIDITY_POOL:
        raise ValidationError(f"{pool} is not a liquidity pool")
    if pool_unit.state['token'] != token:
        raise ValidationError(f"{pool} holds {pool_unit.state['token']}, not {token}")

    draft = TransactionDraft(view)
    state = draft.state(book)
    if token in state['pools']:
        raise ValidationError(f"{token} is already a collateral token")
    state['collateral_tokens'].append(token)
    state['pools'][token] = pool
    return draft.build(_origin(book, registered_by, "COLLATERAL_TOKEN_REGISTERED", OriginType.ADMIN))


def _validate_request(amount: Decimal, days: int, config: LendingConfig) -> None:
    if not isinstance(amount, Decimal) or not amount.is_finite():
        raise InvalidAmount(f"Loan amount must be a finite Decimal, got {amount!r}")
    if amount == 0:
        raise ZeroAmount("Amount must be larger than zero")
    if amount < 0:
        raise InvalidAmount(f"Loan amount cannot be negative: {amount}")
    if not isinstance(days, int) or days <= 0:
        raise ZeroDuration(f"Loan duration must be at least one day, got {days!r}")
    if days > config.max_loan_days:
        raise DurationTooLong(f"Loan duration exceeds the max time limit of {config.max_loan_days} days")


def compute_generate_loan(
    view: LedgerView,
    book: str,
    borrower: str,
    token: str,
    amount: Decimal,
    days: int,
    config: LendingConfig,
    prices: PriceSnapshot,
    native: bool = False,
) -> PendingTransaction:
    """
    Issue a loan of `amount` `token` to `borrower` for `days` days.

    With native=True the token must be the native wrapper and the principal
    is paid out as native value.

    Raises:
        ZeroAmount, ZeroDuration, DurationTooLong: Malformed request.
        UnknownCollateralToken: No pool registered for `token`.
        NotNativeLiquidityProvider: native=True on a non-native token.
        BorrowerHasActiveLoan: The borrower must close their current loan first.
        InsufficientPoolLiquidity: The pool holds less than `amount`.
        InsufficientCollateral: Free collateral is worth less than required.
    """
    _validate_request(amount, days, config)
    draft = TransactionDraft(view)
    state = draft.state(book)

    if token not in state['pools']:
        raise UnknownCollateralToken(f"{token} is not a registered collateral token")
    pool = state['pools'][token]
    if native and view.get_unit(token).unit_type != UNIT_TYPE_WRAPPED_NATIVE:
        raise NotNativeLiquidityProvider("Not ETH LP")
    if borrower in state['active_loan']:
        raise BorrowerHasActiveLoan(f"{borrower} already has loan {state['active_loan'][borrower]} active")
    token_places = view.get_unit(token).decimal_places
    if view.get_unit(token).round(amount) != amount:
        raise InvalidAmount(f"{amount} exceeds the precision of {token}")
    if available_liquidity(view, pool) < amount:
        raise InsufficientPoolLiquidity("Not enough liquidity")

    required = calculate_required_collateral_usd(
        amount, prices.price(token), config.collateral_ratio, prices.price_decimals,
    )
    free = free_collateral(view, book, borrower)
    available = sum((prices.usd(f.token, f.total) for f in free), ZERO)
    if available < required:
        raise InsufficientCollateral("combined collateral and Crypto Score isn't enough")
    tranches = calculate_collateral_allocation(required, free, prices)

    previous = state['last_closed_state'].get(borrower)
    rate = calculate_interest_rate(config, LoanState(previous) if previous else None)
    loan = Loan(
        loan_id=state['next_loan_id'],
        owner=borrower,
        token=token,
        amount=amount,
        days_to_repay=days,
        interest_rate_per_day=rate,
        amount_due=calculate_amount_due(amount, rate, days, token_places),
        issued_at=view.current_time,
        state=LoanState.ACTIVE,
        native=native,
        score_collateral={t.token: t.from_score for t in tranches if t.from_score > 0},
        deposit_collateral={t.token: t.from_deposit for t in tranches if t.from_deposit > 0},
    )

    # Collateral is reserved first; draw_for_loan only lends what is left
    for tranche in tranches:
        if tranche.from_score > 0:
            _adjust(state['locked_score'], tranche.token, borrower, tranche.from_score)
        if tranche.from_deposit > 0:
            _adjust(state['locked_deposit'], tranche.token, borrower, tranche.from_deposit)
            reserve_collateral(draft, state['pools'][tranche.token], book, tranche.from_deposit)

    if native:
        draw_for_loan(draft, pool, book, amount, book)
        unwrap(draft, token, book, borrower, amount, f"loan:{loan.loan_id}")
    else:
        draw_for_loan(draft, pool, book, amount, borrower)

    state['loans'][loan.loan_id] = to_state_dict(loan)
    state['loan_ids'].append(loan.loan_id)
    state['next_loan_id'] = loan.loan_id + 1
    state['active_loan'][borrower] = loan.loan_id
    state['active_funds_lent'][token] = state['active_funds_lent'].get(token, ZERO) + amount
    _adjust(state['user_active_funds_lent'], token, borrower, amount)
    state['total_funds_lent'][token] = state['total_funds_lent'].get(token, ZERO) + amount

    return draft.build(_origin(book, borrower, "LOAN_CREATED", OriginType.USER_ACTION))


def _release_collateral(draft: TransactionDraft, book: str, loan: Loan) -> None:
    state = draft.state(book)
    for token, amount in loan.score_collateral.items():
        _adjust(state['locked_score'], token, loan.owner, -amount)
    for token, amount in loan.deposit_collateral.items():
        _adjust(state['locked_deposit'], token, loan.owner, -amount)
        release_collateral(draft, state['pools'][token], book, amount)


def _close_counters(state: Dict[str, Any], loan: Loan) -> None:
    state['active_funds_lent'][loan.token] = state['active_funds_lent'][loan.token] - loan.amount
    _adjust(state['user_active_funds_lent'], loan.token, loan.owner, -loan.amount)
    del state['active_loan'][loan.owner]


def compute_repay_loan(
    view: LedgerView,
    book: str,
    borrower: str,
    config: LendingConfig,
    native_value: Optional[Decimal] = None,
) -> PendingTransaction:
    """
    Repay the borrower's active loan in full.

    The amount due is pulled from the borrower under the book's allowance
    (or taken from `native_value` for loans in the native token). Principal
    and the LP reward go to the pool, the treasury reward to the treasury,
    and the score half stays in the book wallet as crypto score.

    Raises:
        NoActiveLoan: The borrower has no active loan.
        NativeValueMismatch: native_value differs from the amount due.
        NotNativeLiquidityProvider: native_value given for a non-native loan.
        InsufficientAllowance: The book may not pull the amount due.
    """
    draft = TransactionDraft(view)
    state = draft.state(book)
    loan_id = state['active_loan'].get(borrower)
    if loan_id is None:
        raise NoActiveLoan(f"{borrower} has no active loan")
    loan = _loan_from_dict(state['loans'][loan_id])
    pool = state['pools'][loan.token]
    due = loan.amount_due
    contract_id = f"loan:{loan_id}"

    if native_value is not None:
        if view.get_unit(loan.token).unit_type != UNIT_TYPE_WRAPPED_NATIVE:
            raise NotNativeLiquidityProvider("Not ETH LP")
        if native_value != due:
            raise NativeValueMismatch(f"Attached value {native_value} does not equal amount due {due}")
        wrap(draft, loan.token, borrower, book, due, contract_id)
    else:
        allowed = view.get_allowance(borrower, book, loan.token)
        if allowed < due:
            raise InsufficientAllowance(f"{borrower} approved {allowed} {loan.token}, {due} due")
        draft.move(due, loan.token, borrower, book, contract_id, spender=book)

    split = split_repayment_profit(loan.profit, config, view.get_unit(loan.token).decimal_places)
    return_repayment(draft, pool, book, loan.amount, book)
    credit_income(draft, pool, book, split.to_pool, book)
    draft.move(split.treasury_reward, loan.token, book, config.treasury, contract_id)
    _adjust(state['crypto_score'], loan.token, borrower, split.crypto_score)

    _release_collateral(draft, book, loan)
    _close_counters(state, loan)
    paid = replace(loan, state=LoanState.PAID, closed_at=view.current_time, amount_repaid=due)
    state['loans'][loan_id] = to_state_dict(paid)
    state['last_closed_state'][borrower] = LoanState.PAID.value

    return draft.build(_origin(book, borrower, "LOAN_REPAID", OriginType.USER_ACTION))


def _recall(draft: TransactionDraft, book: str, loan: Loan, caller: str,
            config: LendingConfig) -> None:
    state = draft.state(book)
    owner = loan.owner
    contract_id = f"loan:{loan.loan_id}:recall"

    for token, seized in sorted(loan.collateral.items(), key=lambda kv: state['collateral_tokens'].index(kv[0])):
        pool = state['pools'][token]
        from_score = loan.score_collateral.get(token, ZERO)
        from_deposit = loan.deposit_collateral.get(token, ZERO)
        if from_score > 0:
            _adjust(state['locked_score'], token, owner, -from_score)
            _adjust(state['crypto_score'], token, owner, -from_score)
        if from_deposit > 0:
            _adjust(state['locked_deposit'], token, owner, -from_deposit)
            release_collateral(draft, pool, book, from_deposit)
            take_repayment(draft, pool, book, from_deposit, owner)

        split = split_seized_collateral(seized, config, draft.view.get_unit(token).decimal_places)
        draft.move(split.treasury_share, token, book, config.treasury, contract_id)
        if draft.state(pool).get('native') and split.recaller_share > 0:
            unwrap(draft, token, book, caller, split.recaller_share, contract_id)
        else:
            draft.move(split.recaller_share, token, book, caller, contract_id)
        credit_income(draft, pool, book, split.to_pool, book)

    # Default forfeits the whole score in every involved token
    involved = set(loan.collateral) | {loan.token}
    for token in state['collateral_tokens']:
        if token not in involved:
            continue
        forfeited = _nested(state['crypto_score'], token, owner)
        if forfeited > 0:
            _adjust(state['crypto_score'], token, owner, -forfeited)
            credit_income(draft, state['pools'][token], book, forfeited, book)

    write_off(draft, state['pools'][loan.token], book, loan.amount)
    _close_counters(state, loan)
    recalled = replace(loan, state=LoanState.RECALLED, closed_at=draft.current_time, recalled_by=caller)
    state['loans'][loan.loan_id] = to_state_dict(recalled)
    state['last_closed_state'][owner] = LoanState.RECALLED.value


def _active_loan_for_recall(view: LedgerView, book: str, loan_id: int) -> Loan:
    loan = load_loan(view, book, loan_id)
    if not loan.is_active:
        raise LoanNotActive(f"Loan {loan_id} is {loan.state.value}")
    return loan


def compute_call_late_payment(
    view: LedgerView,
    book: str,
    loan_id: int,
    caller: str,
    config: LendingConfig,
    origin_type: OriginType = OriginType.USER_ACTION,
) -> PendingTransaction:
    """
    Recall an overdue loan. Anyone may call; the caller earns the recaller share.

    Raises:
        LoanNotFound: No loan has this id.
        LoanNotActive: The loan is already paid or recalled.
        NotYetOverdue: The loan's due time has not passed.
    """
    loan = _active_loan_for_recall(view, book, loan_id)
    if view.current_time < loan.due_at:
        raise NotYetOverdue(f"Loan {loan_id} is due at {loan.due_at}")
    draft = TransactionDraft(view)
    _recall(draft, book, loan, caller, config)
    return draft.build(_origin(book, caller, "LOAN_RECALLED", origin_type))


def compute_call_undercollateralized_loan(
    view: LedgerView,
    book: str,
    loan_id: int,
    caller: str,
    config: LendingConfig,
    prices: PriceSnapshot,
    origin_type: OriginType = OriginType.USER_ACTION,
) -> PendingTransaction:
    """
    Recall a loan before its due time because its collateral lost value.

    Raises:
        LoanNotFound: No loan has this id.
        LoanNotActive: The loan is already paid or recalled.
        LoanStillHealthy: The collateral still covers the requirement.
    """
    loan = _active_loan_for_recall(view, book, loan_id)
    if not is_undercollateralized(loan, config, prices):
        raise LoanStillHealthy(f"Loan {loan_id} is still sufficiently collateralized")
    draft = TransactionDraft(view)
    _recall(draft, book, loan, caller, config)
    return draft.build(_origin(book, caller, "LOAN_RECALLED_UNDERCOLLATERALIZED", origin_type))
