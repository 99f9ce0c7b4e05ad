"""
rewards.py - Profit and seizure splits

Pure functions that divide an amount among the parties of a closed loan.
Every share is truncated to the token's precision and the split always
sums exactly to the input: whatever truncation leaves over goes to the
pool.
"""

from dataclasses import dataclass
from decimal import Decimal

from .config import LendingConfig
from .core import round_down, InvalidAmount


@dataclass(frozen=True, slots=True)
class RepaymentSplit:
    """
    Division of a repayment profit (interest).

    Attributes:
        crypto_score: Half of the profit, credited to the borrower's score.
        lp_reward: Configured pool share of the other half.
        treasury_reward: Configured treasury share of the other half.
        remainder: Truncation dust; returns to the pool.
    """
    crypto_score: Decimal
    lp_reward: Decimal
    treasury_reward: Decimal
    remainder: Decimal

    @property
    def to_pool(self) -> Decimal:
        return self.lp_reward + self.remainder

    @property
    def total(self) -> Decimal:
        return self.crypto_score + self.lp_reward + self.treasury_reward + self.remainder


@dataclass(frozen=True, slots=True)
class SeizureSplit:
    """
    Division of collateral seized from a recalled loan, for one token.

    Attributes:
        lp_share: Configured pool share.
        treasury_share: Configured treasury share.
        recaller_share: Reward for the caller who reported the default.
        remainder: Truncation dust and any unassigned percentage; returns to the pool.
    """
    lp_share: Decimal
    treasury_share: Decimal
    recaller_share: Decimal
    remainder: Decimal

    @property
    def to_pool(self) -> Decimal:
        return self.lp_share + self.remainder

    @property
    def total(self) -> Decimal:
        return self.lp_share + self.treasury_share + self.recaller_share + self.remainder


def split_repayment_profit(profit: Decimal, config: LendingConfig, decimal_places: int) -> RepaymentSplit:
    """
    Split repayment profit into crypto score, LP reward and treasury reward.

    The score half is rounded down. The LP and treasury shares of the
    rest are each rounded down and the dust goes to the pool.

    Example (0.4%/day, 100 DAI, 3 days, 80/20 split):
        profit = 1.2 -> crypto_score 0.6, lp_reward 0.48, treasury_reward 0.12
    """
    if profit < 0:
        raise InvalidAmount(f"Profit cannot be negative: {profit}")
    crypto_score = round_down(profit / 2, decimal_places)
    rest = profit - crypto_score
    lp_reward = round_down(rest * config.repaid_lp_share, decimal_places)
    treasury_reward = round_down(rest * config.repaid_dev_share, decimal_places)
    remainder = rest - lp_reward - treasury_reward
    return RepaymentSplit(crypto_score, lp_reward, treasury_reward, remainder)


def split_seized_collateral(seized: Decimal, config: LendingConfig, decimal_places: int) -> SeizureSplit:
    """Split seized collateral per the loan-called percentages; each share rounded down."""
    if seized < 0:
        raise InvalidAmount(f"Seized amount cannot be negative: {seized}")
    lp_share = round_down(seized * config.called_lp_share, decimal_places)
    treasury_share = round_down(seized * config.called_dev_share, decimal_places)
    recaller_share = round_down(seized * config.called_recaller_share, decimal_places)
    remainder = seized - lp_share - treasury_share - recaller_share
    return SeizureSplit(lp_share, treasury_share, recaller_share, remainder)
