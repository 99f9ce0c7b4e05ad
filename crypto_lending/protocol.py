"""
protocol.py - Lending Protocol Facade

Binds a Ledger, an OracleAdapter, a LendingConfig and the loan book into
the operations borrowers, depositors and the admin call. Every operation:

1. Snapshots the prices it needs once
2. Runs a pure compute_* function against the ledger (read-only)
3. Executes the resulting PendingTransaction atomically

Compute functions raise typed errors before anything is touched; if the
ledger itself rejects the transaction the facade raises TransferFailed.
Either way the ledger is left exactly as it was.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .config import LendingConfig, ConfigChange
from .core import (
    PendingTransaction, Transaction, ExecuteResult, OriginType,
    UNIT_TYPE_LIQUIDITY_POOL, UNIT_TYPE_WRAPPED_NATIVE, ZERO, to_decimal,
    TransferFailed, NotAuthorized, ValidationError, UnknownCollateralToken,
)
from .ledger import Ledger
from .price_oracle import OracleAdapter, PriceOracle, PriceSnapshot
from .units.liquidity_pool import (
    create_liquidity_pool, load_pool, check_accounting, available_liquidity,
    compute_lock, compute_lock_native, compute_extract, compute_set_controller,
)
from .units.loan_book import (
    LOAN_BOOK, Loan, create_loan_book, load_loan,
    compute_register_collateral_token, compute_generate_loan, compute_repay_loan,
    compute_call_late_payment, compute_call_undercollateralized_loan,
    get_active_loan, get_collateral_tokens, get_pool_for, get_loan_ids, get_last_loan_id,
    get_crypto_score, get_locked_collateral, get_locked_deposit, get_user_collateral,
    get_active_funds_lent, get_user_active_funds_lent, get_total_funds_lent,
    total_collateral_in_usd, user_locked_collateral_in_usd, user_active_funds_lent_in_usd,
    active_funds_lent_in_usd, total_locked_collateral_in_usd,
    find_overdue_loans, find_undercollateralized_loans, check_score_backing,
)


class LendingProtocol:
    """
    Entry point for every lending operation.

    Example:
        ledger = Ledger("main", datetime(2025, 1, 1), verbose=False)
        ledger.register_unit(token("DAI", "Dai Stablecoin"))
        protocol = LendingProtocol(ledger, StaticPriceOracle({'DAI': Decimal('1')}))
        protocol.create_pool("admin", "DAI")

        ledger.approve("alice", "LP-DAI", "DAI", Decimal("5000"))
        protocol.lock("alice", "DAI", Decimal("5000"))
        loan = protocol.generate_loan("alice", "DAI", Decimal("100"), days=3)
    """

    def __init__(
        self,
        ledger: Ledger,
        oracle: PriceOracle,
        config: Optional[LendingConfig] = None,
        admin: str = "admin",
        book: str = LOAN_BOOK,
        verbose: Optional[bool] = None,
    ):
        """
        Wire a protocol onto a ledger.

        Registers the loan book unit and wallet, the treasury wallet and the
        admin wallet if they are missing.

        Args:
            ledger: Ledger holding tokens, pools and the loan book
            oracle: Price feed
            config: Protocol parameters (default: LendingConfig())
            admin: Identity allowed to register tokens and change config
            book: Loan book symbol (also its wallet id)
            verbose: Print one-line summaries (default: ledger.verbose)
        """
        self.ledger = ledger
        self.config = (config or LendingConfig()).validate()
        self.oracle = OracleAdapter(oracle, self.config.price_decimals)
        self.admin = admin
        self.book = book
        self.verbose = ledger.verbose if verbose is None else verbose
        self.config_history: List[ConfigChange] = []

        if book not in ledger.units:
            ledger.register_unit(create_loan_book(book))
        for wallet in (book, self.config.treasury, admin):
            ledger.ensure_wallet(wallet)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _log(self, message: str) -> None:
        if self.verbose:
            print(message)

    def _submit(self, pending: PendingTransaction, description: str) -> Optional[Transaction]:
        """Execute a pending transaction; raise TransferFailed if the ledger rejects it."""
        if pending.is_empty():
            return None
        result = self.ledger.execute(pending)
        if result == ExecuteResult.REJECTED:
            raise TransferFailed(f"{description}: {self.ledger.last_rejection}")
        self._log(f"[LENDING] {description}")
        return self.ledger.transaction_log[-1]

    def _require_admin(self, caller: str) -> None:
        if caller != self.admin:
            raise NotAuthorized(f"{caller} is not the protocol admin")

    def prices(self) -> PriceSnapshot:
        """Snapshot of every collateral token's price, taken once per operation."""
        return self.oracle.snapshot(self.collateral_tokens, taken_at=self.ledger.current_time)

    def _pool(self, token: str) -> str:
        return get_pool_for(self.ledger, self.book, token)

    # ========================================================================
    # ADMIN
    # ========================================================================

    def create_pool(self, caller: str, token: str, native: Optional[bool] = None) -> str:
        """
        Create, wire and register the liquidity pool for `token`.

        The pool's controller is set to the loan book and the token is
        appended to the collateral set. A pool for the native wrapper
        accepts lock_native.

        Returns:
            The pool symbol (also its wallet id).
        """
        self._require_admin(caller)
        if native is None:
            native = self.ledger.get_unit(token).unit_type == UNIT_TYPE_WRAPPED_NATIVE
        unit = create_liquidity_pool(token, controller=self.book, native=native)
        self.ledger.register_unit(unit)
        self.ledger.ensure_wallet(unit.symbol)
        self.register_collateral_token(caller, token, unit.symbol)
        return unit.symbol

    def register_collateral_token(self, caller: str, token: str, pool: str) -> None:
        """Add `token` (held by `pool`) to the collateral set."""
        self._require_admin(caller)
        pending = compute_register_collateral_token(self.ledger, self.book, token, pool, caller)
        self._submit(pending, f"registered collateral token {token} ({pool})")

    def set_liquidity_pool_controller(self, caller: str, pool: str, controller: str) -> None:
        """Point a pool at a new controller identity."""
        self._require_admin(caller)
        if self.ledger.get_unit(pool).unit_type != UNIT_TYPE_LIQUIDITY_POOL:
            raise ValidationError(f"{pool} is not a liquidity pool")
        pending = compute_set_controller(self.ledger, pool, controller, caller)
        self._submit(pending, f"{pool} controller set to {controller}")

    def set_config(self, caller: str, **changes: Any) -> LendingConfig:
        """
        Replace protocol parameters.

        Example:
            protocol.set_config("admin", interest_rate_per_day=Decimal("0.005"))

        Raises:
            NotAuthorized: If caller is not the admin.
            InvalidConfiguration: On unknown or out-of-range parameters.
        """
        self._require_admin(caller)
        new_config = self.config.with_changes(**changes)
        change = ConfigChange.between(self.config, new_config, caller, self.ledger.current_time)
        if new_config.treasury != self.config.treasury:
            self.ledger.ensure_wallet(new_config.treasury)
        self.config = new_config
        self.oracle.price_decimals = new_config.price_decimals
        self.config_history.append(change)
        self._log(f"[LENDING] config updated by {caller}: {change.as_dict()}")
        return new_config

    # ========================================================================
    # DEPOSITORS
    # ========================================================================

    def lock(self, depositor: str, token: str, amount: Decimal) -> Transaction:
        """Lock `amount` of `token` in its pool (requires a prior approve to the pool)."""
        pool = self._pool(token)
        pending = compute_lock(self.ledger, pool, depositor, to_decimal(amount), self.config.lock_duration)
        return self._submit(pending, f"{depositor} locked {amount} {token}")

    def lock_native(self, depositor: str, amount: Decimal, token: Optional[str] = None) -> Transaction:
        """Lock native value into the native pool (first native pool if token is None)."""
        token = token or self.native_token
        pool = self._pool(token)
        pending = compute_lock_native(self.ledger, pool, depositor, to_decimal(amount), self.config.lock_duration)
        return self._submit(pending, f"{depositor} locked {amount} native value as {token}")

    def extract(self, depositor: str, token: str) -> Transaction:
        """Withdraw the depositor's whole deposit once its lock has expired."""
        pool = self._pool(token)
        reserved = get_locked_deposit(self.ledger, self.book, token, depositor)
        pending = compute_extract(self.ledger, pool, depositor, reserved)
        return self._submit(pending, f"{depositor} extracted from {pool}")

    # ========================================================================
    # BORROWERS
    # ========================================================================

    def generate_loan(self, borrower: str, token: str, amount: Decimal, days: int) -> Loan:
        """Borrow `amount` of `token` for `days` days against free collateral."""
        pending = compute_generate_loan(
            self.ledger, self.book, borrower, token, to_decimal(amount), days,
            self.config, self.prices(),
        )
        self._submit(pending, f"{borrower} borrowed {amount} {token} for {days} days")
        return get_active_loan(self.ledger, self.book, borrower)

    def generate_loan_native(self, borrower: str, amount: Decimal, days: int,
                             token: Optional[str] = None) -> Loan:
        """Borrow from the native pool; principal is paid out as native value."""
        token = token or self.native_token
        pending = compute_generate_loan(
            self.ledger, self.book, borrower, token, to_decimal(amount), days,
            self.config, self.prices(), native=True,
        )
        self._submit(pending, f"{borrower} borrowed {amount} native value for {days} days")
        return get_active_loan(self.ledger, self.book, borrower)

    def repay_loan(self, borrower: str) -> Loan:
        """Repay the borrower's active loan (requires approving the amount due to the book)."""
        pending = compute_repay_loan(self.ledger, self.book, borrower, self.config)
        active = get_active_loan(self.ledger, self.book, borrower)
        self._submit(pending, f"{borrower} repaid loan {active.loan_id}")
        return load_loan(self.ledger, self.book, active.loan_id)

    def repay_loan_native(self, borrower: str, value: Decimal) -> Loan:
        """Repay a native-token loan with attached native value equal to the amount due."""
        pending = compute_repay_loan(
            self.ledger, self.book, borrower, self.config, native_value=to_decimal(value),
        )
        active = get_active_loan(self.ledger, self.book, borrower)
        self._submit(pending, f"{borrower} repaid loan {active.loan_id} with native value")
        return load_loan(self.ledger, self.book, active.loan_id)

    def call_late_payment(self, caller: str, loan_id: int,
                          origin_type: OriginType = OriginType.USER_ACTION) -> Loan:
        """Recall an overdue loan; the caller receives the recaller share."""
        pending = compute_call_late_payment(
            self.ledger, self.book, loan_id, caller, self.config, origin_type,
        )
        self._submit(pending, f"{caller} recalled overdue loan {loan_id}")
        return load_loan(self.ledger, self.book, loan_id)

    def call_undercollateralized_loan(self, caller: str, loan_id: int,
                                      origin_type: OriginType = OriginType.USER_ACTION) -> Loan:
        """Recall a loan whose collateral no longer covers the requirement."""
        pending = compute_call_undercollateralized_loan(
            self.ledger, self.book, loan_id, caller, self.config, self.prices(), origin_type,
        )
        self._submit(pending, f"{caller} recalled undercollateralized loan {loan_id}")
        return load_loan(self.ledger, self.book, loan_id)

    # ========================================================================
    # VIEWS
    # ========================================================================

    @property
    def collateral_tokens(self) -> List[str]:
        return get_collateral_tokens(self.ledger, self.book)

    @property
    def native_token(self) -> str:
        """First registered collateral token that wraps native value."""
        for token in self.collateral_tokens:
            if self.ledger.get_unit(token).unit_type == UNIT_TYPE_WRAPPED_NATIVE:
                return token
        raise UnknownCollateralToken("No native-value pool is registered")

    @property
    def price_decimals(self) -> int:
        return self.config.price_decimals

    @property
    def last_loan_id(self) -> int:
        return get_last_loan_id(self.ledger, self.book)

    @property
    def loan_ids(self) -> List[int]:
        return get_loan_ids(self.ledger, self.book)

    def loan(self, loan_id: int) -> Loan:
        return load_loan(self.ledger, self.book, loan_id)

    def active_loan(self, user: str) -> Optional[Loan]:
        return get_active_loan(self.ledger, self.book, user)

    def pool_symbol(self, token: str) -> str:
        return self._pool(token)

    def pool_state(self, token: str):
        return load_pool(self.ledger, self._pool(token))

    def available_liquidity(self, token: str) -> Decimal:
        return available_liquidity(self.ledger, self._pool(token))

    def crypto_score(self, token: str, user: str) -> Decimal:
        return get_crypto_score(self.ledger, self.book, token, user)

    def locked_collateral(self, token: str, user: str) -> Decimal:
        return get_locked_collateral(self.ledger, self.book, token, user)

    def user_collateral(self, token: str, user: str) -> Decimal:
        return get_user_collateral(self.ledger, self.book, token, user)

    def active_funds_lent(self, token: str) -> Decimal:
        return get_active_funds_lent(self.ledger, self.book, token)

    def user_active_funds_lent(self, token: str, user: str) -> Decimal:
        return get_user_active_funds_lent(self.ledger, self.book, token, user)

    def total_funds_lent(self, token: str) -> Decimal:
        return get_total_funds_lent(self.ledger, self.book, token)

    def usd_amount_for_token(self, token: str, amount: Decimal) -> Decimal:
        return self.oracle.usd_amount_for_token(token, to_decimal(amount))

    def total_collateral_in_usd(self, user: str) -> Decimal:
        return total_collateral_in_usd(self.ledger, self.book, user, self.prices())

    def user_locked_collateral_in_usd(self, user: str) -> Decimal:
        return user_locked_collateral_in_usd(self.ledger, self.book, user, self.prices())

    def user_active_funds_lent_in_usd(self, user: str) -> Decimal:
        return user_active_funds_lent_in_usd(self.ledger, self.book, user, self.prices())

    def active_funds_lent_in_usd(self) -> Decimal:
        return active_funds_lent_in_usd(self.ledger, self.book, self.prices())

    def total_locked_collateral_in_usd(self) -> Decimal:
        return total_locked_collateral_in_usd(self.ledger, self.book, self.prices())

    def overdue_loans(self, now: Optional[datetime] = None) -> List[int]:
        return find_overdue_loans(self.ledger, self.book, now)

    def undercollateralized_loans(self) -> List[int]:
        return find_undercollateralized_loans(self.ledger, self.book, self.config, self.prices())

    def check_invariants(self) -> Dict[str, Any]:
        """
        Check the protocol-wide invariants.

        - double entry holds for every token
        - every pool satisfies its accounting identity
        - crypto scores are fully backed by the loan book wallet
        - active funds lent equal the sum of users' active funds lent
        - each pool reserves exactly the deposits locked as collateral
        """
        problems: List[str] = []
        double_entry = self.ledger.verify_double_entry()
        if not double_entry['valid']:
            problems.append(f"double entry: {double_entry['discrepancies']}")
        for token in self.collateral_tokens:
            accounting = check_accounting(self.ledger, self._pool(token))
            if not accounting['valid']:
                problems.append(
                    f"pool {token}: off by {accounting['difference']}, "
                    f"reserved {accounting['reserved']} of balance {accounting['balance']}"
                )
        backing = check_score_backing(self.ledger, self.book)
        if not backing['valid']:
            problems.append(f"crypto score backing: {backing['discrepancies']}")
        state = self.ledger.get_unit_state(self.book)
        for token in self.collateral_tokens:
            locked = sum(state['locked_deposit'].get(token, {}).values(), ZERO)
            reserved = self.pool_state(token).reserved
            if locked != reserved:
                problems.append(f"reserved {token}: pool {reserved} != locked deposits {locked}")
            per_user = sum(state['user_active_funds_lent'].get(token, {}).values(), ZERO)
            if per_user != state['active_funds_lent'].get(token, ZERO):
                problems.append(f"active funds lent {token}: {per_user} != {state['active_funds_lent'].get(token)}")
        return {'valid': not problems, 'problems': problems}
