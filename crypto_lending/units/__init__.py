"""
Units module - Stateful units of the lending system.

- Native wrapper: fungible wrapper around the chain's native value
- Liquidity pools: per-token deposits, draws and repayments
- Loan book: loans, collateral, crypto scores and recalls

All unit factories and related functions are re-exported here for convenience.
"""

# Native value wrapper
from .native_wrapper import (
    reserve_wallet,
    create_wrapped_native,
    native_symbol_of,
    wrap,
    unwrap,
)

# Liquidity pools
from .liquidity_pool import (
    pool_symbol,
    create_liquidity_pool,
    PoolState,
    load_pool,
    available_liquidity,
    check_accounting,
    lock_into,
    reserve_collateral,
    release_collateral,
    draw_for_loan,
    return_repayment,
    credit_income,
    take_repayment,
    write_off,
    compute_lock,
    compute_lock_native,
    compute_extract,
    compute_draw_for_loan,
    compute_return_repayment,
    compute_take_repayment,
    compute_set_controller,
)

# Loan book
from .loan_book import (
    LOAN_BOOK,
    LoanState,
    Loan,
    CollateralTranche,
    FreeCollateral,
    create_loan_book,
    load_loan,
    get_loan_ids,
    get_last_loan_id,
    get_active_loan,
    get_collateral_tokens,
    get_pool_for,
    get_crypto_score,
    get_locked_collateral,
    get_user_collateral,
    free_collateral,
    calculate_amount_due,
    calculate_required_collateral_usd,
    calculate_interest_rate,
    calculate_collateral_allocation,
    is_undercollateralized,
    find_overdue_loans,
    check_score_backing,
    compute_register_collateral_token,
    compute_generate_loan,
    compute_repay_loan,
    compute_call_late_payment,
    compute_call_undercollateralized_loan,
)
