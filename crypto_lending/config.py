"""
config.py - Lending Protocol Parameters

LendingConfig holds every rate, percentage and duration the loan book and
pools read. It is an explicit immutable object held by the LendingProtocol;
changing a parameter means replacing the whole config through the admin
setter, which records a ConfigChange for audit.

Percentages are fractions (Decimal("0.8") is 80%) except collateral_ratio,
which is expressed in percent (140 means 140%).
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Tuple

from .core import InvalidConfiguration, PRICE_DECIMALS, to_decimal


DEFAULT_TREASURY = "treasury"


@dataclass(frozen=True, slots=True)
class LendingConfig:
    """
    Immutable protocol parameters.

    Attributes:
        collateral_ratio: Required USD collateral as a percentage of the
            loan's USD value (140 = 140%).
        interest_rate_per_day: Simple daily interest (0.004 = 0.4%/day).
        penalization_rate_per_day: Extra daily interest on the first loan
            after a recall.
        max_loan_days: Longest loan term accepted.
        repaid_lp_share: LP fraction of the non-score half of a repayment profit.
        repaid_dev_share: Treasury fraction of the same half.
        called_lp_share: LP fraction of seized collateral.
        called_dev_share: Treasury fraction of seized collateral.
        called_recaller_share: Fraction paid to whoever reports the default.
        lock_duration: Minimum time a deposit stays in its pool.
        price_decimals: Fixed-point precision of USD values.
        treasury: Wallet receiving protocol rewards.
    """
    collateral_ratio: Decimal = Decimal("140")
    interest_rate_per_day: Decimal = Decimal("0.004")
    penalization_rate_per_day: Decimal = Decimal("0.001")
    max_loan_days: int = 30
    repaid_lp_share: Decimal = Decimal("0.8")
    repaid_dev_share: Decimal = Decimal("0.2")
    called_lp_share: Decimal = Decimal("0.7")
    called_dev_share: Decimal = Decimal("0.2")
    called_recaller_share: Decimal = Decimal("0.1")
    lock_duration: timedelta = timedelta(days=365)
    price_decimals: int = PRICE_DECIMALS
    treasury: str = DEFAULT_TREASURY

    def __post_init__(self):
        for name in (
            'collateral_ratio', 'interest_rate_per_day', 'penalization_rate_per_day',
            'repaid_lp_share', 'repaid_dev_share',
            'called_lp_share', 'called_dev_share', 'called_recaller_share',
        ):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

    def validate(self) -> 'LendingConfig':
        """
        Check parameter ranges. Returns self so it can be chained.

        Raises:
            InvalidConfiguration: On any out-of-range parameter.
        """
        if self.collateral_ratio < 100:
            raise InvalidConfiguration(f"collateral_ratio must be >= 100, got {self.collateral_ratio}")
        if self.interest_rate_per_day < 0:
            raise InvalidConfiguration("interest_rate_per_day cannot be negative")
        if self.penalization_rate_per_day < 0:
            raise InvalidConfiguration("penalization_rate_per_day cannot be negative")
        if not isinstance(self.max_loan_days, int) or self.max_loan_days < 1:
            raise InvalidConfiguration(f"max_loan_days must be a positive int, got {self.max_loan_days}")
        shares = (
            self.repaid_lp_share, self.repaid_dev_share,
            self.called_lp_share, self.called_dev_share, self.called_recaller_share,
        )
        if any(share < 0 or share > 1 for share in shares):
            raise InvalidConfiguration("reward shares must lie in [0, 1]")
        if self.repaid_lp_share + self.repaid_dev_share != 1:
            raise InvalidConfiguration("repaid shares must sum to 1")
        if self.called_lp_share + self.called_dev_share + self.called_recaller_share > 1:
            raise InvalidConfiguration("called shares cannot exceed 1")
        if self.lock_duration < timedelta(0):
            raise InvalidConfiguration("lock_duration cannot be negative")
        if self.price_decimals < 0:
            raise InvalidConfiguration("price_decimals cannot be negative")
        if not self.treasury:
            raise InvalidConfiguration("treasury wallet must be named")
        return self

    def with_changes(self, **changes: Any) -> 'LendingConfig':
        """Return a validated copy with some parameters replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise InvalidConfiguration(f"Unknown config parameters: {sorted(unknown)}")
        return replace(self, **changes).validate()


@dataclass(frozen=True, slots=True)
class ConfigChange:
    """Audit record of one admin configuration update."""
    changed_by: str
    changed_at: datetime
    changes: Tuple[Tuple[str, Any, Any], ...]  # (parameter, old, new)

    @classmethod
    def between(cls, old: LendingConfig, new: LendingConfig,
                changed_by: str, changed_at: datetime) -> 'ConfigChange':
        diffs = tuple(
            (f.name, getattr(old, f.name), getattr(new, f.name))
            for f in fields(old)
            if getattr(old, f.name) != getattr(new, f.name)
        )
        return cls(changed_by=changed_by, changed_at=changed_at, changes=diffs)

    def as_dict(self) -> Dict[str, Tuple[Any, Any]]:
        return {name: (old, new) for name, old, new in self.changes}
