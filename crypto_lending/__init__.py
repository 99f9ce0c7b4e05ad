"""
crypto_lending - Collateralized Lending Ledger

Per-token liquidity pools, a loan book that lends against collateral and
crypto score across several tokens, and an in-memory double-entry token
ledger that carries every movement of value.

Usage:
    from crypto_lending import (
        Ledger, LendingProtocol, StaticPriceOracle, token, Move,
        build_transaction, SYSTEM_WALLET,
    )

    ledger = Ledger("main", datetime(2025, 1, 1))
    ledger.register_unit(token("DAI", "Dai Stablecoin"))
    ledger.register_wallet("alice")

    # Fund wallets via SYSTEM_WALLET (proper issuance)
    ledger.execute(build_transaction(ledger, [
        Move(Decimal("5000"), "DAI", SYSTEM_WALLET, "alice", "faucet")
    ]))

    protocol = LendingProtocol(ledger, StaticPriceOracle({'DAI': Decimal('1')}))
    protocol.create_pool("admin", "DAI")

    # Deposit, then borrow against the deposit
    ledger.approve("alice", "LP-DAI", "DAI", Decimal("5000"))
    protocol.lock("alice", "DAI", Decimal("5000"))
    loan = protocol.generate_loan("alice", "DAI", Decimal("100"), days=3)
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionDraft,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    token,
    native_token,
    round_down,
    round_up,
    to_decimal,
    SYSTEM_WALLET,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_NATIVE,
    UNIT_TYPE_WRAPPED_NATIVE,
    UNIT_TYPE_LIQUIDITY_POOL,
    UNIT_TYPE_LOAN_BOOK,
    PRICE_DECIMALS,
    SECONDS_PER_DAY,
    Positions,
    BalanceMap,
    UnitState,
)

# Errors
from .core import (
    LedgerError,
    UnitNotRegistered,
    WalletNotRegistered,
    TransferFailed,
    PriceUnavailable,
    ValidationError,
    InvalidAmount,
    ZeroAmount,
    ZeroDuration,
    DurationTooLong,
    UnknownCollateralToken,
    NotNativeLiquidityProvider,
    NativeValueMismatch,
    InvalidConfiguration,
    AuthorizationError,
    InsufficientAllowance,
    PoolAuthorityMismatch,
    NotAuthorized,
    LoanStateError,
    NoActiveLoan,
    LoanNotFound,
    LoanNotActive,
    NotYetOverdue,
    LoanStillHealthy,
    BorrowerHasActiveLoan,
    StillLocked,
    NothingLocked,
    CollateralStillLocked,
    LiquidityError,
    InsufficientPoolLiquidity,
    InsufficientCollateral,
)

# Ledger
from .ledger import Ledger

# Configuration
from .config import LendingConfig, ConfigChange

# Prices
from .price_oracle import (
    PriceOracle,
    StaticPriceOracle,
    TimeSeriesPriceOracle,
    PriceSnapshot,
    OracleAdapter,
    usd_value,
    token_amount_for_usd,
)

# Reward splits
from .rewards import (
    RepaymentSplit,
    SeizureSplit,
    split_repayment_profit,
    split_seized_collateral,
)

# Units
from .units import (
    create_wrapped_native,
    reserve_wallet,
    pool_symbol,
    create_liquidity_pool,
    PoolState,
    load_pool,
    available_liquidity,
    check_accounting,
    compute_lock,
    compute_lock_native,
    compute_extract,
    compute_draw_for_loan,
    compute_return_repayment,
    compute_take_repayment,
    compute_set_controller,
    LOAN_BOOK,
    LoanState,
    Loan,
    CollateralTranche,
    FreeCollateral,
    create_loan_book,
    load_loan,
    calculate_amount_due,
    calculate_required_collateral_usd,
    calculate_interest_rate,
    calculate_collateral_allocation,
    compute_register_collateral_token,
    compute_generate_loan,
    compute_repay_loan,
    compute_call_late_payment,
    compute_call_undercollateralized_loan,
)

# Facade, keeper and simulation
from .protocol import LendingProtocol
from .keeper import RecallKeeper, KeeperStep
from .simulation import MarketScenario, SimulationResult, generate_price_paths, run_simulation


__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction', 'TransactionDraft',
    'TransactionOrigin', 'OriginType', 'build_transaction',
    'Unit', 'UnitStateChange', 'ExecuteResult', 'token', 'native_token',
    'round_down', 'round_up', 'to_decimal',
    'SYSTEM_WALLET', 'UNIT_TYPE_TOKEN', 'UNIT_TYPE_NATIVE', 'UNIT_TYPE_WRAPPED_NATIVE',
    'UNIT_TYPE_LIQUIDITY_POOL', 'UNIT_TYPE_LOAN_BOOK', 'PRICE_DECIMALS', 'SECONDS_PER_DAY',
    'Positions', 'BalanceMap', 'UnitState',

    # Errors
    'LedgerError', 'UnitNotRegistered', 'WalletNotRegistered', 'TransferFailed',
    'PriceUnavailable', 'ValidationError', 'InvalidAmount', 'ZeroAmount', 'ZeroDuration',
    'DurationTooLong', 'UnknownCollateralToken', 'NotNativeLiquidityProvider',
    'NativeValueMismatch', 'InvalidConfiguration', 'AuthorizationError',
    'InsufficientAllowance', 'PoolAuthorityMismatch', 'NotAuthorized', 'LoanStateError',
    'NoActiveLoan', 'LoanNotFound', 'LoanNotActive', 'NotYetOverdue', 'LoanStillHealthy',
    'BorrowerHasActiveLoan', 'StillLocked', 'NothingLocked', 'CollateralStillLocked',
    'LiquidityError', 'InsufficientPoolLiquidity', 'InsufficientCollateral',

    # Ledger and configuration
    'Ledger', 'LendingConfig', 'ConfigChange',

    # Prices
    'PriceOracle', 'StaticPriceOracle', 'TimeSeriesPriceOracle', 'PriceSnapshot',
    'OracleAdapter', 'usd_value', 'token_amount_for_usd',

    # Rewards
    'RepaymentSplit', 'SeizureSplit', 'split_repayment_profit', 'split_seized_collateral',

    # Native wrapper
    'create_wrapped_native', 'reserve_wallet',

    # Liquidity pools
    'pool_symbol', 'create_liquidity_pool', 'PoolState', 'load_pool',
    'available_liquidity', 'check_accounting', 'compute_lock', 'compute_lock_native',
    'compute_extract', 'compute_draw_for_loan', 'compute_return_repayment',
    'compute_take_repayment', 'compute_set_controller',

    # Loan book
    'LOAN_BOOK', 'LoanState', 'Loan', 'CollateralTranche', 'FreeCollateral',
    'create_loan_book', 'load_loan', 'calculate_amount_due',
    'calculate_required_collateral_usd', 'calculate_interest_rate',
    'calculate_collateral_allocation', 'compute_register_collateral_token',
    'compute_generate_loan', 'compute_repay_loan', 'compute_call_late_payment',
    'compute_call_undercollateralized_loan',

    # Facade, keeper and simulation
    'LendingProtocol', 'RecallKeeper', 'KeeperStep',
    'MarketScenario', 'SimulationResult', 'generate_price_paths', 'run_simulation',
]

__version__ = '1.0.0'
