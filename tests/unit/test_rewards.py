"""
test_rewards.py - Unit tests for profit and seizure splits
"""

import pytest
from decimal import Decimal
from crypto_lending import (
    LendingConfig, split_repayment_profit, split_seized_collateral, InvalidAmount,
)


class TestRepaymentSplit:
    """Tests for split_repayment_profit."""

    def test_reference_split(self):
        split = split_repayment_profit(Decimal("1.2"), LendingConfig(), 18)
        assert split.crypto_score == Decimal("0.6")
        assert split.lp_reward == Decimal("0.48")
        assert split.treasury_reward == Decimal("0.12")
        assert split.total == Decimal("1.2")

    def test_odd_profit_leaves_dust_to_pool(self):
        split = split_repayment_profit(Decimal("0.000003"), LendingConfig(), 6)
        assert split.crypto_score == Decimal("0.000001")
        assert split.treasury_reward == Decimal("0")
        assert split.lp_reward == Decimal("0.000001")
        assert split.remainder == Decimal("0.000001")
        assert split.to_pool == Decimal("0.000002")
        assert split.total == Decimal("0.000003")

    def test_configured_lp_share(self):
        config = LendingConfig(repaid_lp_share=Decimal("0.5"), repaid_dev_share=Decimal("0.5"))
        split = split_repayment_profit(Decimal("1.2"), config, 18)
        assert split.lp_reward == Decimal("0.3")
        assert split.treasury_reward == Decimal("0.3")
        assert split.remainder == Decimal("0")

    def test_zero_profit(self):
        split = split_repayment_profit(Decimal("0"), LendingConfig(), 18)
        assert split.total == Decimal("0")

    def test_negative_profit_raises(self):
        with pytest.raises(InvalidAmount):
            split_repayment_profit(Decimal("-1"), LendingConfig(), 18)


class TestSeizureSplit:
    """Tests for split_seized_collateral."""

    def test_reference_split(self):
        split = split_seized_collateral(Decimal("140"), LendingConfig(), 18)
        assert split.lp_share == Decimal("98")
        assert split.treasury_share == Decimal("28")
        assert split.recaller_share == Decimal("14")
        assert split.remainder == Decimal("0")
        assert split.to_pool == Decimal("98")

    def test_truncation_remainder_goes_to_pool(self):
        split = split_seized_collateral(Decimal("0.000019"), LendingConfig(), 6)
        assert split.lp_share == Decimal("0.000013")
        assert split.treasury_share == Decimal("0.000003")
        assert split.recaller_share == Decimal("0.000001")
        assert split.remainder == Decimal("0.000002")
        assert split.total == Decimal("0.000019")

    def test_unassigned_percentage_goes_to_pool(self):
        config = LendingConfig(called_lp_share=Decimal("0.5"))
        split = split_seized_collateral(Decimal("100"), config, 18)
        assert split.remainder == Decimal("20")
        assert split.to_pool == Decimal("70")
