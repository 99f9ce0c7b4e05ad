#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Learn the Lending Protocol Step by Step

This is a pedagogical demonstration of how collateralized lending works on
top of the double-entry ledger. Each step builds on the previous one. Press
Enter to advance.

WHAT YOU'LL LEARN:
  1-3:   Foundation      - Tokens, native value, pools and the loan book
  4-6:   Loan Lifecycle  - Borrowing, repayment, crypto score
  7-8:   Default         - Recall by a third party, penalized rates
  9-10:  Native Value    - Native loans, price drops, the recall keeper
  11:    Stress          - Monte Carlo market simulation

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import sys

from crypto_lending import (
    Ledger, Move, SYSTEM_WALLET, ExecuteResult, build_transaction,
    token, native_token, create_wrapped_native, reserve_wallet,
    LendingProtocol, StaticPriceOracle, RecallKeeper,
    LedgerError, MarketScenario, run_simulation,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)

    dai_price: Decimal = Decimal("1")
    weth_price: Decimal = Decimal("2000")
    crashed_weth_price: Decimal = Decimal("1000")

    lp_dai: Decimal = Decimal("5000")
    lp_eth: Decimal = Decimal("10")
    bob_dai: Decimal = Decimal("200")
    carol_weth: Decimal = Decimal("0.1")

    loan_amount: Decimal = Decimal("100")
    loan_days: int = 3

    simulation_days: int = 60


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def faucet(ledger: Ledger, wallet: str, symbol: str, amount: Decimal):
    """Issue tokens from the system wallet."""
    result = ledger.execute(build_transaction(ledger, [
        Move(amount, symbol, SYSTEM_WALLET, wallet, "faucet")
    ]))
    assert result == ExecuteResult.APPLIED


def show_pool(protocol: LendingProtocol, symbol: str):
    pool = protocol.pool_state(symbol)
    balance = protocol.ledger.get_balance(pool.symbol, symbol)
    print(f"{pool.symbol:8s} balance={balance}  locked={pool.total_locked}  "
          f"lent_out={pool.lent_out}  reserved={pool.reserved}  income={pool.income}  "
          f"written_off={pool.written_off}")


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-3)
# ============================================================================

def step_01_tokens():
    """Create the ledger with DAI, ETH and its wrapper WETH."""
    step_header(1, "Tokens and Native Value",
        "Understand the three kinds of value the protocol moves.")

    print("""
    The ledger holds three kinds of transferable units:

    1. TOKEN           - ERC20-style; pulled by others only under an allowance
    2. NATIVE          - the chain's own value (ETH); attached to calls
    3. WRAPPED_NATIVE  - WETH: a token backed 1:1 by ETH in a reserve wallet

    Pools only ever hold tokens. Native value is wrapped on the way in
    and unwrapped on the way out.
    """)
    wait_for_enter()

    ledger = Ledger("lending", CONFIG.start_time, verbose=False)
    ledger.register_unit(token("DAI", "Dai Stablecoin", 18))
    ledger.register_unit(native_token("ETH", "Ether", 18))
    ledger.register_unit(create_wrapped_native("WETH", "Wrapped Ether", "ETH", 18))
    ledger.register_wallet(reserve_wallet("WETH"))
    for wallet in ("lp", "alice", "bob", "carol"):
        ledger.register_wallet(wallet)

    section_header("Registered Units")
    for symbol in ledger.list_units():
        unit = ledger.get_unit(symbol)
        print(f"{symbol:6s} {unit.unit_type:16s} {unit.decimal_places} decimals")
    return ledger


def step_02_protocol(ledger: Ledger):
    """Wire the protocol: loan book plus one pool per collateral token."""
    step_header(2, "Pools and the Loan Book",
        "Every collateral token gets a pool; the loan book controls them all.")

    oracle = StaticPriceOracle({'DAI': CONFIG.dai_price, 'WETH': CONFIG.weth_price})
    protocol = LendingProtocol(ledger, oracle, verbose=True)
    protocol.create_pool("admin", "DAI")
    protocol.create_pool("admin", "WETH")

    section_header("Collateral Tokens (registration order)")
    for symbol in protocol.collateral_tokens:
        state = protocol.pool_state(symbol)
        print(f"{symbol:6s} pool={state.symbol}  controller={state.controller}  native={state.native}")

    section_header("Key Insight")
    print("""
    Registration order matters: when a loan needs collateral from several
    tokens, they are drawn in this order.
    """)
    return protocol


def step_03_liquidity(protocol: LendingProtocol):
    """Liquidity providers lock DAI and ETH."""
    step_header(3, "Providing Liquidity",
        "Deposits are locked for a year and double as borrowing collateral.")
    ledger = protocol.ledger

    faucet(ledger, "lp", "DAI", CONFIG.lp_dai)
    ledger.approve("lp", protocol.pool_symbol("DAI"), "DAI", CONFIG.lp_dai)
    protocol.lock("lp", "DAI", CONFIG.lp_dai)

    faucet(ledger, "lp", "ETH", CONFIG.lp_eth)
    protocol.lock_native("lp", CONFIG.lp_eth)

    section_header("Pools")
    show_pool(protocol, "DAI")
    show_pool(protocol, "WETH")
    print(f"\nReserve ETH:     {ledger.get_balance(reserve_wallet('WETH'), 'ETH')}")
    print(f"WETH circulating: {ledger.circulating_supply('WETH')}")
    print(f"lp unlocks at:    {protocol.pool_state('DAI').unlock_time_of('lp')}")


# ============================================================================
# PHASE 2: LOAN LIFECYCLE (Steps 4-6)
# ============================================================================

def step_04_borrow(protocol: LendingProtocol):
    """Bob deposits DAI and borrows against it."""
    step_header(4, "Borrowing",
        "A loan locks 140% of its USD value from the borrower's deposits.")
    ledger = protocol.ledger

    faucet(ledger, "bob", "DAI", CONFIG.bob_dai)
    ledger.approve("bob", protocol.pool_symbol("DAI"), "DAI", CONFIG.bob_dai)
    protocol.lock("bob", "DAI", CONFIG.bob_dai)

    loan = protocol.generate_loan("bob", "DAI", CONFIG.loan_amount, CONFIG.loan_days)

    section_header("Loan")
    print(f"Loan id:      {loan.loan_id}")
    print(f"Principal:    {loan.amount} {loan.token}")
    print(f"Rate / day:   {loan.interest_rate_per_day}")
    print(f"Amount due:   {loan.amount_due}")
    print(f"Due at:       {loan.due_at}")
    print(f"Collateral:   {loan.collateral}")
    print(f"Free for bob: {protocol.user_collateral('DAI', 'bob')} DAI")
    show_pool(protocol, "DAI")
    return loan


def step_05_repay(protocol: LendingProtocol):
    """Bob repays; the profit is split three ways."""
    step_header(5, "Repayment",
        "Half the interest becomes the borrower's crypto score; LPs and treasury share the rest.")
    ledger = protocol.ledger
    loan = protocol.active_loan("bob")

    faucet(ledger, "bob", "DAI", loan.amount_due - ledger.get_balance("bob", "DAI"))
    ledger.approve("bob", protocol.book, "DAI", loan.amount_due)
    protocol.repay_loan("bob")

    section_header("Profit Split")
    print(f"Crypto score (bob): {protocol.crypto_score('DAI', 'bob')}")
    print(f"Pool income:        {protocol.pool_state('DAI').income}")
    print(f"Treasury:           {ledger.get_balance('treasury', 'DAI')}")
    print(f"Book wallet:        {ledger.get_balance(protocol.book, 'DAI')}  (backs the scores)")


def step_06_score_as_collateral(protocol: LendingProtocol):
    """The crypto score is spent first when collateral is locked."""
    step_header(6, "Crypto Score as Collateral",
        "Score earned by repaying counts as collateral for the next loan.")
    loan = protocol.generate_loan("bob", "DAI", CONFIG.loan_amount, 1)
    print(f"From score:   {loan.score_collateral}")
    print(f"From deposit: {loan.deposit_collateral}")
    return loan


# ============================================================================
# PHASE 3: DEFAULT (Steps 7-8)
# ============================================================================

def step_07_recall(protocol: LendingProtocol, loan):
    """Carol recalls bob's overdue loan."""
    step_header(7, "Recalling an Overdue Loan",
        "Anyone may recall a loan past its due time and earn 10% of the seized collateral.")
    ledger = protocol.ledger

    section_header("Too Early")
    try:
        protocol.call_late_payment("carol", loan.loan_id)
    except LedgerError as exc:
        print(f"{type(exc).__name__}: {exc}")

    ledger.advance_time(loan.due_at)
    protocol.call_late_payment("carol", loan.loan_id)

    section_header("After Recall")
    print(f"Loan state:       {protocol.loan(loan.loan_id).state.value}")
    print(f"Carol (recaller): {ledger.get_balance('carol', 'DAI')} DAI")
    print(f"Treasury:         {ledger.get_balance('treasury', 'DAI')} DAI")
    print(f"Bob's score:      {protocol.crypto_score('DAI', 'bob')}")
    print(f"Bob's deposit:    {protocol.pool_state('DAI').deposit_of('bob')}")
    show_pool(protocol, "DAI")


def step_08_penalty(protocol: LendingProtocol):
    """Bob's next loan carries the penalization rate."""
    step_header(8, "Penalized Rate",
        "After a recall the next loan pays the base rate plus a penalty.")
    loan = protocol.generate_loan("bob", "DAI", Decimal("10"), 2)
    print(f"Rate / day: {loan.interest_rate_per_day}  amount due: {loan.amount_due}")
    ledger = protocol.ledger
    faucet(ledger, "bob", "DAI", loan.amount_due)
    ledger.approve("bob", protocol.book, "DAI", loan.amount_due)
    protocol.repay_loan("bob")


# ============================================================================
# PHASE 4: NATIVE VALUE (Steps 9-10)
# ============================================================================

def step_09_native_loan(protocol: LendingProtocol):
    """Alice borrows ETH against DAI and repays with attached value."""
    step_header(9, "Native Loans",
        "Native loans pay out ETH and are repaid with exactly the amount due attached.")
    ledger = protocol.ledger
    faucet(ledger, "alice", "DAI", Decimal("500"))
    ledger.approve("alice", protocol.pool_symbol("DAI"), "DAI", Decimal("500"))
    protocol.lock("alice", "DAI", Decimal("500"))

    loan = protocol.generate_loan_native("alice", Decimal("0.1"), 5)
    print(f"Alice ETH: {ledger.get_balance('alice', 'ETH')}  owes {loan.amount_due} WETH")

    faucet(ledger, "alice", "ETH", loan.amount_due - loan.amount)
    protocol.repay_loan_native("alice", loan.amount_due)
    print(f"Reserve ETH {ledger.get_balance(reserve_wallet('WETH'), 'ETH')} == "
          f"WETH circulating {ledger.circulating_supply('WETH')}")


def step_10_keeper(protocol: LendingProtocol):
    """A price crash makes a loan recallable before its due time."""
    step_header(10, "Price Drops and the Keeper",
        "A keeper sweeps overdue and undercollateralized loans automatically.")
    ledger = protocol.ledger
    faucet(ledger, "carol", "ETH", CONFIG.carol_weth)
    protocol.lock_native("carol", CONFIG.carol_weth)
    loan = protocol.generate_loan("carol", "DAI", CONFIG.loan_amount, 10)
    print(f"Carol's collateral: {loan.collateral}")

    protocol.oracle.oracle.set_price("WETH", CONFIG.crashed_weth_price)
    print(f"WETH price -> {CONFIG.crashed_weth_price}")

    keeper = RecallKeeper(protocol, "keeper", recall_undercollateralized=True)
    step = keeper.step()
    print(f"Keeper recalled: {step.recalled}")
    print(f"Keeper earned:   {ledger.get_balance('keeper', 'ETH')} ETH")

    section_header("Invariants")
    check = protocol.check_invariants()
    print(f"valid={check['valid']}  problems={check['problems']}")


# ============================================================================
# PHASE 5: STRESS (Step 11)
# ============================================================================

def step_11_simulation():
    """Run a short Monte Carlo stress scenario."""
    step_header(11, "Market Simulation",
        "Random prices, borrowers and defaults; the invariants hold every day.")
    result = run_simulation(MarketScenario(days=CONFIG.simulation_days))
    for key, value in result.summary().items():
        print(f"{key:18s} {value}")


def main():
    print("\n" + "=" * 70)
    print("       COLLATERALIZED LENDING - INTERACTIVE TUTORIAL")
    print("=" * 70)

    ledger = step_01_tokens()
    wait_for_enter()
    protocol = step_02_protocol(ledger)
    wait_for_enter()
    step_03_liquidity(protocol)
    wait_for_enter()

    step_04_borrow(protocol)
    wait_for_enter()
    step_05_repay(protocol)
    wait_for_enter()
    loan = step_06_score_as_collateral(protocol)
    wait_for_enter()

    step_07_recall(protocol, loan)
    wait_for_enter()
    step_08_penalty(protocol)
    wait_for_enter()

    step_09_native_loan(protocol)
    wait_for_enter()
    step_10_keeper(protocol)
    wait_for_enter()

    step_11_simulation()

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See crypto_lending/units/*.py for the pool and loan book
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
