"""
test_lending_scenarios.py - End-to-end loan lifecycles

Tests complete lifecycles through the LendingProtocol facade:
- Issuing a 100-unit, 3-day loan from a 5000-unit pool
- A zero-amount request changes nothing
- Repayment with interest and profit split
- Third-party recall, score reset, penalized next loan
- Collateral requirement spanning two tokens
- Crypto score as collateral across loans
"""

import pytest
from decimal import Decimal
from crypto_lending import LoanState, ZeroAmount, LoanNotActive, NoActiveLoan, InsufficientPoolLiquidity

from tests.lending_setup import T0, DAY, make_protocol, deposit, mint, repay


class TestLoanIssuance:
    """Loan issuance from a funded pool."""

    def test_issue_loan(self, protocol):
        ledger = protocol.ledger
        deposit(protocol, "alice", "DAI", Decimal("5000"))
        assert protocol.available_liquidity("DAI") == Decimal("5000")

        loan = protocol.generate_loan("alice", "DAI", Decimal("100"), 3)

        assert loan.state == LoanState.ACTIVE
        assert protocol.locked_collateral("DAI", "alice") == Decimal("140")
        assert protocol.active_funds_lent("DAI") == Decimal("100")
        assert ledger.get_balance("alice", "DAI") == Decimal("100")
        # 100 lent out, alice's 140 held back as collateral
        assert protocol.available_liquidity("DAI") == Decimal("4760")
        assert protocol.pool_state("DAI").reserved == Decimal("140")
        assert protocol.user_collateral("DAI", "alice") == Decimal("4860")
        assert protocol.check_invariants()['valid']


class TestZeroAmountRequest:
    """Zero amount is rejected with no state change."""

    def test_zero_amount(self, funded_protocol):
        before = funded_protocol.ledger.snapshot()
        with pytest.raises(ZeroAmount):
            funded_protocol.generate_loan("lp", "DAI", Decimal("0"), 3)
        assert funded_protocol.ledger.snapshot() == before
        assert funded_protocol.loan_ids == []


class TestRepayment:
    """Repayment of a 100-unit, 3-day loan at 0.4%/day."""

    def test_repay_with_interest(self, protocol):
        ledger = protocol.ledger
        deposit(protocol, "alice", "DAI", Decimal("5000"))
        loan = protocol.generate_loan("alice", "DAI", Decimal("100"), 3)
        assert loan.amount_due == Decimal("101.2")

        ledger.advance_time(T0 + DAY)
        mint(ledger, "alice", "DAI", Decimal("1.2"))
        ledger.approve("alice", protocol.book, "DAI", Decimal("101.2"))
        paid = protocol.repay_loan("alice")

        assert paid.state == LoanState.PAID
        assert paid.amount_repaid == Decimal("101.2")
        assert paid.closed_at == T0 + DAY
        assert protocol.crypto_score("DAI", "alice") == Decimal("0.6")
        assert ledger.get_balance(protocol.book, "DAI") == Decimal("0.6")
        assert ledger.get_balance("treasury", "DAI") == Decimal("0.12")
        assert ledger.get_balance("LP-DAI", "DAI") == Decimal("5000.48")
        assert protocol.pool_state("DAI").income == Decimal("0.48")
        assert protocol.active_funds_lent("DAI") == Decimal("0")
        assert protocol.user_active_funds_lent("DAI", "alice") == Decimal("0")
        assert protocol.total_funds_lent("DAI") == Decimal("100")
        assert protocol.locked_collateral("DAI", "alice") == Decimal("0")
        assert protocol.user_collateral("DAI", "alice") == Decimal("5000.6")
        assert protocol.active_loan("alice") is None
        assert ledger.get_balance("alice", "DAI") == Decimal("0")
        assert protocol.check_invariants()['valid']

    def test_early_repayment_pays_full_term(self, protocol):
        deposit(protocol, "alice", "DAI", Decimal("5000"))
        protocol.generate_loan("alice", "DAI", Decimal("100"), 30)
        repay(protocol, "alice")
        assert protocol.loan(1).amount_repaid == Decimal("112")

    def test_late_repayment_still_allowed_before_recall(self, protocol):
        deposit(protocol, "alice", "DAI", Decimal("5000"))
        protocol.generate_loan("alice", "DAI", Decimal("100"), 3)
        protocol.ledger.advance_time(T0 + 10 * DAY)
        repay(protocol, "alice")
        assert protocol.loan(1).state == LoanState.PAID
        with pytest.raises(LoanNotActive):
            protocol.call_late_payment("carol", 1)


class TestLateRecall:
    """Overdue loan recalled by a third party."""

    def _setup(self, funded_protocol):
        protocol = funded_protocol
        deposit(protocol, "bob", "DAI", Decimal("200"))
        protocol.generate_loan("bob", "DAI", Decimal("100"), 3)
        repay(protocol, "bob")
        assert protocol.crypto_score("DAI", "bob") == Decimal("0.6")
        loan = protocol.generate_loan("bob", "DAI", Decimal("100"), 1)
        assert loan.score_collateral == {"DAI": Decimal("0.6")}
        assert loan.deposit_collateral == {"DAI": Decimal("139.4")}
        return protocol, loan

    def test_recall(self, funded_protocol):
        protocol, loan = self._setup(funded_protocol)
        ledger = protocol.ledger
        ledger.advance_time(T0 + DAY)

        recalled = protocol.call_late_payment("carol", loan.loan_id)

        assert recalled.state == LoanState.RECALLED
        assert recalled.recalled_by == "carol"
        assert protocol.crypto_score("DAI", "bob") == Decimal("0")
        assert protocol.locked_collateral("DAI", "bob") == Decimal("0")
        assert protocol.pool_state("DAI").deposit_of("bob") == Decimal("60.6")
        assert ledger.get_balance("carol", "DAI") == Decimal("14")
        assert ledger.get_balance("treasury", "DAI") == Decimal("28.12")
        assert ledger.get_balance(protocol.book, "DAI") == Decimal("0")
        assert ledger.get_balance("LP-DAI", "DAI") == Decimal("5059.08")
        pool = protocol.pool_state("DAI")
        assert pool.income == Decimal("98.48")
        assert pool.written_off == Decimal("100")
        assert pool.lent_out == Decimal("0")
        assert protocol.active_funds_lent("DAI") == Decimal("0")
        assert protocol.active_loan("bob") is None
        assert ledger.transaction_log[-1].origin.event_type == "LOAN_RECALLED"
        assert protocol.check_invariants()['valid']

    def test_next_loan_is_penalized(self, funded_protocol):
        protocol, loan = self._setup(funded_protocol)
        protocol.ledger.advance_time(T0 + DAY)
        protocol.call_late_payment("carol", loan.loan_id)

        penalized = protocol.generate_loan("bob", "DAI", Decimal("10"), 2)
        assert penalized.interest_rate_per_day == Decimal("0.005")
        assert penalized.amount_due == Decimal("10.1")

    def test_penalty_lasts_one_loan(self, funded_protocol):
        protocol, loan = self._setup(funded_protocol)
        protocol.ledger.advance_time(T0 + DAY)
        protocol.call_late_payment("carol", loan.loan_id)
        protocol.generate_loan("bob", "DAI", Decimal("10"), 2)
        repay(protocol, "bob")
        assert protocol.generate_loan("bob", "DAI", Decimal("10"), 2).interest_rate_per_day == Decimal("0.004")

    def test_repay_after_recall_fails(self, funded_protocol):
        protocol, loan = self._setup(funded_protocol)
        protocol.ledger.advance_time(T0 + DAY)
        protocol.call_late_payment("carol", loan.loan_id)
        before = protocol.ledger.snapshot()
        with pytest.raises(NoActiveLoan):
            protocol.repay_loan("bob")
        with pytest.raises(LoanNotActive):
            protocol.call_late_payment("alice", loan.loan_id)
        assert protocol.ledger.snapshot() == before

    def test_unseized_score_is_forfeited_to_pool(self, funded_protocol):
        protocol = funded_protocol
        deposit(protocol, "bob", "DAI", Decimal("2000"))
        protocol.generate_loan("bob", "DAI", Decimal("1000"), 10)
        repay(protocol, "bob")
        # profit 40, score 20: the next loan only needs part of it
        assert protocol.crypto_score("DAI", "bob") == Decimal("20")
        loan = protocol.generate_loan("bob", "DAI", Decimal("10"), 1)
        assert loan.score_collateral == {"DAI": Decimal("14")}

        income_before = protocol.pool_state("DAI").income
        protocol.ledger.advance_time(T0 + DAY)
        protocol.call_late_payment("carol", loan.loan_id)

        assert protocol.crypto_score("DAI", "bob") == Decimal("0")
        # seized 14: 9.8 to the pool; forfeited score 6 also to the pool
        assert protocol.pool_state("DAI").income - income_before == Decimal("15.8")
        assert protocol.pool_state("DAI").deposit_of("bob") == Decimal("2000")
        assert protocol.check_invariants()['valid']


class TestRecallFromLentPool:
    """Deposits backing a loan stay in the pool, however much of it is lent out."""

    def test_sole_depositor_cannot_borrow_own_collateral(self, protocol):
        deposit(protocol, "bob", "DAI", Decimal("140"))
        before = protocol.ledger.snapshot()
        with pytest.raises(InsufficientPoolLiquidity):
            protocol.generate_loan("bob", "DAI", Decimal("100"), 1)
        assert protocol.ledger.snapshot() == before

    def test_recall_when_everything_else_is_lent(self, protocol):
        ledger = protocol.ledger
        deposit(protocol, "bob", "DAI", Decimal("140"))
        deposit(protocol, "lp", "DAI", Decimal("100"))
        loan = protocol.generate_loan("bob", "DAI", Decimal("100"), 1)
        assert protocol.available_liquidity("DAI") == Decimal("0")
        ledger.advance_time(T0 + 2 * DAY)

        assert protocol.overdue_loans() == [loan.loan_id]
        recalled = protocol.call_late_payment("carol", loan.loan_id)

        assert recalled.state == LoanState.RECALLED
        assert ledger.get_balance("carol", "DAI") == Decimal("14")
        assert ledger.get_balance("treasury", "DAI") == Decimal("28")
        assert ledger.get_balance("LP-DAI", "DAI") == Decimal("98")
        pool = protocol.pool_state("DAI")
        assert pool.reserved == Decimal("0")
        assert pool.deposit_of("bob") == Decimal("0")
        assert pool.deposit_of("lp") == Decimal("100")
        assert protocol.check_invariants()['valid']

    def test_reserved_deposit_is_not_lent_to_others(self):
        protocol = make_protocol(("DAI", "WETH"))
        ledger = protocol.ledger
        deposit(protocol, "lp", "WETH", Decimal("5"))
        deposit(protocol, "lp", "DAI", Decimal("100"))
        deposit(protocol, "bob", "DAI", Decimal("1400"))
        loan = protocol.generate_loan("bob", "WETH", Decimal("0.5"), 1)
        assert loan.collateral == {"DAI": Decimal("1400")}

        deposit(protocol, "alice", "WETH", Decimal("1"))
        with pytest.raises(InsufficientPoolLiquidity):
            protocol.generate_loan("alice", "DAI", Decimal("1400"), 30)
        protocol.generate_loan("alice", "DAI", Decimal("100"), 30)

        ledger.advance_time(T0 + DAY)
        protocol.call_late_payment("carol", loan.loan_id)

        assert protocol.loan(loan.loan_id).state == LoanState.RECALLED
        assert ledger.get_balance("carol", "DAI") == Decimal("140")
        assert ledger.get_balance("LP-DAI", "DAI") == Decimal("980")
        assert protocol.pool_state("WETH").written_off == Decimal("0.5")
        assert protocol.active_loan("alice") is not None
        assert protocol.check_invariants()['valid']

    def test_reserved_deposit_cannot_be_extracted_by_others(self, protocol):
        deposit(protocol, "bob", "DAI", Decimal("140"))
        deposit(protocol, "lp", "DAI", Decimal("100"))
        protocol.generate_loan("bob", "DAI", Decimal("100"), 1)
        protocol.ledger.advance_time(T0 + protocol.config.lock_duration)

        before = protocol.ledger.snapshot()
        with pytest.raises(InsufficientPoolLiquidity):
            protocol.extract("lp", "DAI")
        assert protocol.ledger.snapshot() == before


class TestMultiTokenCollateral:
    """Collateral requirement spanning two tokens."""

    def test_shortfall_drawn_from_second_token(self, multi_protocol):
        protocol = multi_protocol
        deposit(protocol, "bob", "DAI", Decimal("50"))
        deposit(protocol, "bob", "WETH", Decimal("1"))

        loan = protocol.generate_loan("bob", "DAI", Decimal("100"), 3)

        assert protocol.locked_collateral("DAI", "bob") == Decimal("50")
        assert protocol.locked_collateral("WETH", "bob") == Decimal("0.045")
        assert loan.collateral == {"DAI": Decimal("50"), "WETH": Decimal("0.045")}
        assert protocol.user_locked_collateral_in_usd("bob") == Decimal("140")
        assert protocol.check_invariants()['valid']

    def test_rounding_never_favours_borrower(self):
        protocol = make_protocol(("DAI", "WETH"), prices={'DAI': Decimal("1"), 'WETH': Decimal("7")})
        deposit(protocol, "lp", "DAI", Decimal("5000"))
        deposit(protocol, "bob", "DAI", Decimal("50"))
        deposit(protocol, "bob", "WETH", Decimal("100"))

        protocol.generate_loan("bob", "DAI", Decimal("100"), 3)

        assert protocol.locked_collateral("WETH", "bob") == Decimal("12.857142857142857143")
        assert protocol.user_locked_collateral_in_usd("bob") >= Decimal("140")

    def test_multi_token_recall_seizes_each_token(self, multi_protocol):
        protocol = multi_protocol
        ledger = protocol.ledger
        deposit(protocol, "bob", "DAI", Decimal("50"))
        deposit(protocol, "bob", "WETH", Decimal("1"))
        loan = protocol.generate_loan("bob", "DAI", Decimal("100"), 3)
        ledger.advance_time(T0 + 3 * DAY)

        protocol.call_late_payment("carol", loan.loan_id)

        assert ledger.get_balance("carol", "DAI") == Decimal("5")
        # recaller share of the native pool arrives as native value
        assert ledger.get_balance("carol", "ETH") == Decimal("0.0045")
        assert ledger.get_balance("carol", "WETH") == Decimal("0")
        assert ledger.get_balance("treasury", "DAI") == Decimal("10")
        assert ledger.get_balance("treasury", "WETH") == Decimal("0.009")
        assert protocol.pool_state("DAI").deposit_of("bob") == Decimal("0")
        assert protocol.pool_state("WETH").deposit_of("bob") == Decimal("0.955")
        assert protocol.pool_state("WETH").income == Decimal("0.0315")
        assert protocol.check_invariants()['valid']


class TestCryptoScoreCollateral:
    """Crypto score earned on repayment backs later loans."""

    def test_score_counts_as_collateral(self, funded_protocol):
        protocol = funded_protocol
        deposit(protocol, "alice", "DAI", Decimal("2000"))
        protocol.generate_loan("alice", "DAI", Decimal("1000"), 30)
        repay(protocol, "alice")
        # profit 120, score 60
        assert protocol.crypto_score("DAI", "alice") == Decimal("60")
        assert protocol.total_collateral_in_usd("alice") == Decimal("2060")

        loan = protocol.generate_loan("alice", "DAI", Decimal("1471"), 1)
        assert loan.score_collateral == {"DAI": Decimal("60")}
        assert loan.deposit_collateral == {"DAI": Decimal("1999.4")}
        assert protocol.user_collateral("DAI", "alice") == Decimal("0.6")

    def test_score_is_released_on_repayment(self, funded_protocol):
        protocol = funded_protocol
        deposit(protocol, "alice", "DAI", Decimal("200"))
        protocol.generate_loan("alice", "DAI", Decimal("100"), 3)
        repay(protocol, "alice")
        protocol.generate_loan("alice", "DAI", Decimal("100"), 3)
        repay(protocol, "alice")
        assert protocol.crypto_score("DAI", "alice") == Decimal("1.2")
        assert protocol.locked_collateral("DAI", "alice") == Decimal("0")
        assert protocol.ledger.get_balance(protocol.book, "DAI") == Decimal("1.2")
        assert protocol.check_invariants()['valid']
