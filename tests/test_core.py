"""
test_core.py - Unit tests for core data structures

Tests:
- Rounding helpers: direction and precision
- Move: creation, validation, immutability
- TransactionDraft: working state, zero moves, one change per unit
- Transaction: creation, validation, contract ids
- UnitStateChange: changed fields
- Unit factories: token, native_token
"""

import pytest
from datetime import datetime
from decimal import Decimal
from crypto_lending import (
    Move, Transaction, TransactionDraft, UnitStateChange,
    TransactionOrigin, OriginType,
    round_down, round_up, to_decimal, token, native_token,
    UNIT_TYPE_TOKEN, UNIT_TYPE_NATIVE,
    LedgerError, ValidationError, ZeroAmount, AuthorizationError, InsufficientAllowance,
    LoanStateError, NoActiveLoan, LiquidityError, InsufficientCollateral,
)
from crypto_lending.units import create_liquidity_pool

from tests.fake_view import FakeView


def _test_origin() -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id="test",
    )


class TestRounding:
    """Tests for round_down / round_up."""

    def test_round_down_truncates(self):
        assert round_down(Decimal("1.2399"), 2) == Decimal("1.23")

    def test_round_up_rounds_away(self):
        assert round_up(Decimal("1.2301"), 2) == Decimal("1.24")

    def test_exact_values_unchanged(self):
        assert round_down(Decimal("1.5"), 6) == Decimal("1.5")
        assert round_up(Decimal("1.5"), 6) == Decimal("1.5")

    def test_eighteen_places(self):
        value = Decimal(90) / Decimal(7)
        assert round_up(value, 18) == Decimal("12.857142857142857143")
        assert round_down(value, 18) == Decimal("12.857142857142857142")

    def test_to_decimal_goes_through_str(self):
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal(3) == Decimal("3")


class TestMove:
    """Tests for Move dataclass."""

    def test_create_valid_move(self):
        move = Move(Decimal("100"), "DAI", "alice", "bob", "tx_001")
        assert move.source == "alice"
        assert move.dest == "bob"
        assert move.quantity == Decimal("100")
        assert move.spender is None

    def test_move_with_spender(self):
        move = Move(Decimal("100"), "DAI", "alice", "LP-DAI", "lock", spender="LP-DAI")
        assert move.spender == "LP-DAI"
        assert "via LP-DAI" in repr(move)

    def test_zero_quantity_raises(self):
        with pytest.raises(ValueError, match="positive"):
            Move(Decimal("0"), "DAI", "alice", "bob", "tx_001")

    def test_negative_quantity_raises(self):
        with pytest.raises(ValueError, match="positive"):
            Move(Decimal("-1"), "DAI", "alice", "bob", "tx_001")

    def test_float_quantity_raises(self):
        with pytest.raises(ValueError, match="Decimal"):
            Move(100.0, "DAI", "alice", "bob", "tx_001")

    def test_infinite_quantity_raises(self):
        with pytest.raises(ValueError, match="finite"):
            Move(Decimal("Infinity"), "DAI", "alice", "bob", "tx_001")

    def test_same_source_dest_raises(self):
        with pytest.raises(ValueError, match="Source and dest must be different"):
            Move(Decimal("1"), "DAI", "alice", "alice", "tx_001")

    def test_empty_contract_id_raises(self):
        with pytest.raises(ValueError, match="contract_id"):
            Move(Decimal("1"), "DAI", "alice", "bob", " ")

    def test_move_is_frozen(self):
        move = Move(Decimal("100"), "DAI", "alice", "bob", "tx_001")
        with pytest.raises(AttributeError):
            move.quantity = Decimal("200")


class TestTransactionDraft:
    """Tests for TransactionDraft."""

    def _view(self):
        return FakeView(
            balances={},
            units=[token("DAI", "Dai"), create_liquidity_pool("DAI", controller="loan_book")],
            time=datetime(2025, 1, 1),
        )

    def test_zero_moves_are_skipped(self):
        draft = TransactionDraft(self._view())
        draft.move(Decimal("0"), "DAI", "alice", "bob", "reward")
        assert draft.moves == []

    def test_state_is_a_working_copy(self):
        view = self._view()
        draft = TransactionDraft(view)
        draft.state("LP-DAI")['income'] = Decimal("5")
        assert draft.state("LP-DAI")['income'] == Decimal("5")
        assert view.get_unit_state("LP-DAI")['income'] == Decimal("0")

    def test_build_emits_one_change_per_edited_unit(self):
        draft = TransactionDraft(self._view())
        draft.state("LP-DAI")['income'] = Decimal("5")
        draft.state("LP-DAI")['lent_out'] = Decimal("1")
        draft.move(Decimal("5"), "DAI", "alice", "LP-DAI", "income")
        pending = draft.build(_test_origin())
        assert len(pending.state_changes) == 1
        change = pending.state_changes[0]
        assert set(change.changed_fields()) == {'income', 'lent_out'}
        assert change.old_state['income'] == Decimal("0")

    def test_untouched_state_emits_nothing(self):
        draft = TransactionDraft(self._view())
        draft.state("LP-DAI")
        pending = draft.build(_test_origin())
        assert pending.is_empty()

    def test_timestamp_comes_from_view(self):
        pending = TransactionDraft(self._view()).build(_test_origin())
        assert pending.timestamp == datetime(2025, 1, 1)


class TestTransaction:
    """Tests for Transaction dataclass."""

    def test_contract_ids_populated_from_moves(self):
        tx = Transaction(
            moves=(
                Move(Decimal("1"), "DAI", "alice", "bob", "a"),
                Move(Decimal("2"), "DAI", "bob", "carol", "b"),
            ),
            state_changes=(),
            origin=_test_origin(),
            timestamp=datetime(2025, 1, 1),
            exec_id="exec:test:0",
            ledger_name="test",
            execution_time=datetime(2025, 1, 1),
            sequence_number=0,
        )
        assert tx.contract_ids == frozenset({"a", "b"})
        assert "exec:test:0" in repr(tx)

    def test_empty_transaction_raises(self):
        with pytest.raises(ValueError, match="must have moves or state_changes"):
            Transaction(
                moves=(), state_changes=(), origin=_test_origin(),
                timestamp=datetime(2025, 1, 1), exec_id="x", ledger_name="test",
                execution_time=datetime(2025, 1, 1), sequence_number=0,
            )


class TestUnitStateChange:
    """Tests for UnitStateChange."""

    def test_changed_fields(self):
        change = UnitStateChange("LP-DAI", {'a': 1, 'b': 2}, {'a': 1, 'b': 3, 'c': 4})
        assert change.changed_fields() == {'b': (2, 3), 'c': (None, 4)}


class TestUnitFactories:
    """Tests for token factories."""

    def test_token(self):
        unit = token("USDT", "Tether USD", 6)
        assert unit.unit_type == UNIT_TYPE_TOKEN
        assert unit.decimal_places == 6
        assert unit.is_token
        assert unit.round(Decimal("1.23456789")) == Decimal("1.234567")

    def test_native_token(self):
        unit = native_token()
        assert unit.symbol == "ETH"
        assert unit.unit_type == UNIT_TYPE_NATIVE
        assert unit.is_token

    def test_pool_is_not_a_token(self):
        assert not create_liquidity_pool("DAI").is_token


class TestErrorTaxonomy:
    """Errors group into validation, authorization, state and liquidity."""

    def test_hierarchy(self):
        assert issubclass(ZeroAmount, ValidationError)
        assert issubclass(InsufficientAllowance, AuthorizationError)
        assert issubclass(NoActiveLoan, LoanStateError)
        assert issubclass(InsufficientCollateral, LiquidityError)
        for group in (ValidationError, AuthorizationError, LoanStateError, LiquidityError):
            assert issubclass(group, LedgerError)
