"""
Temporal Conformance Tests

INVARIANT: Time-based operations respect due times and lock periods.

    recall(L) at t  succeeds ⟺ t ≥ issued_at(L) + days_to_repay(L) days
    extract(d) at t succeeds ⟹ t ≥ last lock time of d + lock_duration

This ensures:
- A loan cannot be recalled for lateness before it is due
- An overdue loan can always be recalled, however much of its pools is lent out
- Deposits stay locked for the whole lock period after each top-up
- Time can only advance forward and the log carries execution times
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal
from datetime import timedelta

from crypto_lending import (
    LendingConfig, NotYetOverdue, StillLocked, LoanState, TimeSeriesPriceOracle,
    LendingProtocol, PriceUnavailable,
)

from tests.conformance.operations import operations, apply_operation
from tests.lending_setup import T0, DAY, make_ledger, make_protocol, deposit


class TestDueTimes:
    """Recall windows."""

    @given(st.integers(min_value=1, max_value=30), st.integers(min_value=0, max_value=40 * 86400))
    @settings(max_examples=50, deadline=None)
    def test_recall_only_from_due_time(self, days, elapsed_seconds):
        protocol = make_protocol(("DAI",))
        deposit(protocol, "lp", "DAI", Decimal("5000"))
        deposit(protocol, "bob", "DAI", Decimal("200"))
        loan = protocol.generate_loan("bob", "DAI", Decimal("100"), days)
        now = T0 + timedelta(seconds=elapsed_seconds)
        protocol.ledger.advance_time(now)

        assert (loan.loan_id in protocol.overdue_loans()) == (now >= loan.due_at)
        if now < loan.due_at:
            with pytest.raises(NotYetOverdue):
                protocol.call_late_payment("carol", loan.loan_id)
            assert protocol.loan(loan.loan_id).is_active
        else:
            assert protocol.call_late_payment("carol", loan.loan_id).state == LoanState.RECALLED

    @given(st.lists(operations, min_size=1, max_size=25))
    @settings(max_examples=50, deadline=None)
    def test_every_overdue_loan_can_be_recalled(self, history):
        """
        PROPERTY: with pools funded only by borrowers, every loan still active
        once its due time has passed can be recalled.
        """
        protocol = make_protocol(("DAI", "WETH"))
        for op in history:
            apply_operation(protocol, op)
        ledger = protocol.ledger
        ledger.advance_time(ledger.current_time + (protocol.config.max_loan_days + 1) * DAY)

        active = sorted(i for i in protocol.loan_ids if protocol.loan(i).is_active)
        assert protocol.overdue_loans() == active
        for loan_id in active:
            assert protocol.call_late_payment("lp", loan_id).state == LoanState.RECALLED
        assert protocol.check_invariants()['valid']

    def test_due_boundary(self, funded_protocol):
        deposit(funded_protocol, "bob", "DAI", Decimal("200"))
        loan = funded_protocol.generate_loan("bob", "DAI", Decimal("100"), 2)
        assert loan.due_at == T0 + 2 * DAY
        funded_protocol.ledger.advance_time(loan.due_at - timedelta(seconds=1))
        with pytest.raises(NotYetOverdue):
            funded_protocol.call_late_payment("carol", loan.loan_id)
        funded_protocol.ledger.advance_time(loan.due_at)
        funded_protocol.call_late_payment("carol", loan.loan_id)

    def test_late_repayment_accrues_nothing_extra(self, funded_protocol):
        deposit(funded_protocol, "bob", "DAI", Decimal("200"))
        loan = funded_protocol.generate_loan("bob", "DAI", Decimal("100"), 2)
        funded_protocol.ledger.advance_time(T0 + 20 * DAY)
        assert funded_protocol.active_loan("bob").amount_due == loan.amount_due


class TestLockPeriods:
    """Deposits stay locked for the configured duration."""

    @given(st.integers(min_value=1, max_value=30), st.integers(min_value=0, max_value=60))
    @settings(max_examples=50, deadline=None)
    def test_extract_only_after_lock(self, lock_days, elapsed_days):
        config = LendingConfig(lock_duration=timedelta(days=lock_days))
        protocol = make_protocol(("DAI",), config=config)
        deposit(protocol, "alice", "DAI", Decimal("100"))
        protocol.ledger.advance_time(T0 + elapsed_days * DAY)
        if elapsed_days < lock_days:
            with pytest.raises(StillLocked):
                protocol.extract("alice", "DAI")
        else:
            protocol.extract("alice", "DAI")
            assert protocol.ledger.get_balance("alice", "DAI") == Decimal("100")

    def test_top_up_restarts_lock(self):
        protocol = make_protocol(("DAI",), config=LendingConfig(lock_duration=timedelta(days=10)))
        deposit(protocol, "alice", "DAI", Decimal("100"))
        protocol.ledger.advance_time(T0 + 8 * DAY)
        deposit(protocol, "alice", "DAI", Decimal("1"))
        protocol.ledger.advance_time(T0 + 12 * DAY)
        with pytest.raises(StillLocked):
            protocol.extract("alice", "DAI")
        assert protocol.pool_state("DAI").unlock_time_of("alice") == T0 + 18 * DAY


class TestClock:
    """Ledger time and time-dependent prices."""

    def test_time_cannot_go_backwards(self, funded_protocol):
        funded_protocol.ledger.advance_time(T0 + DAY)
        with pytest.raises(ValueError):
            funded_protocol.ledger.advance_time(T0)

    def test_log_carries_execution_time(self, funded_protocol):
        deposit(funded_protocol, "bob", "DAI", Decimal("200"))
        funded_protocol.ledger.advance_time(T0 + DAY)
        funded_protocol.generate_loan("bob", "DAI", Decimal("10"), 3)
        times = [tx.execution_time for tx in funded_protocol.ledger.transaction_log]
        assert times == sorted(times)
        assert times[-1] == T0 + DAY
        assert funded_protocol.active_loan("bob").issued_at == T0 + DAY

    def test_prices_follow_ledger_time(self):
        ledger = make_ledger()
        oracle = TimeSeriesPriceOracle(clock=lambda: ledger.current_time)
        oracle.add_prices({'DAI': Decimal("1"), 'WETH': Decimal("2000")}, T0)
        oracle.add_prices({'WETH': Decimal("1000")}, T0 + DAY)
        protocol = LendingProtocol(ledger, oracle, verbose=False)
        protocol.create_pool("admin", "DAI")
        protocol.create_pool("admin", "WETH")
        deposit(protocol, "lp", "DAI", Decimal("5000"))
        deposit(protocol, "bob", "WETH", Decimal("0.1"))
        protocol.generate_loan("bob", "DAI", Decimal("100"), 10)
        assert protocol.undercollateralized_loans() == []

        ledger.advance_time(T0 + DAY)
        assert protocol.undercollateralized_loans() == [1]

    def test_no_price_before_first_observation(self):
        ledger = make_ledger()
        oracle = TimeSeriesPriceOracle(clock=lambda: ledger.current_time)
        oracle.add_prices({'DAI': Decimal("1")}, T0 + DAY)
        protocol = LendingProtocol(ledger, oracle, verbose=False)
        protocol.create_pool("admin", "DAI")
        deposit(protocol, "lp", "DAI", Decimal("5000"))
        with pytest.raises(PriceUnavailable):
            protocol.generate_loan("lp", "DAI", Decimal("10"), 1)
