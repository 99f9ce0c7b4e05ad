"""
keeper.py - Recall Keeper

Polls the loan book at each time step and recalls loans on behalf of a
keeper wallet, which collects the recaller share.

Execution order each step():
1. Advance ledger time
2. Recall every overdue active loan, in id order
3. Optionally recall loans whose collateral no longer covers them

The transaction log is the audit trail; recalls carry the KEEPER origin.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .core import LedgerError, OriginType, Transaction
from .protocol import LendingProtocol


@dataclass
class KeeperStep:
    """Outcome of one keeper step."""
    timestamp: datetime
    recalled: List[int] = field(default_factory=list)
    failed: List[Tuple[int, str]] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)


class RecallKeeper:
    """
    Permissionless recall bot.

    Recalls the protocol refuses are reported in KeeperStep.failed and
    retried on the next step; the sweep itself never raises.
    """

    def __init__(
        self,
        protocol: LendingProtocol,
        keeper: str = "keeper",
        recall_undercollateralized: bool = False,
    ):
        self.protocol = protocol
        self.keeper = keeper
        self.recall_undercollateralized = recall_undercollateralized
        self.verbose = protocol.verbose
        self.history: List[KeeperStep] = []
        protocol.ledger.ensure_wallet(keeper)

    def step(self, timestamp: Optional[datetime] = None) -> KeeperStep:
        """
        Advance time (if given) and recall everything that is recallable.

        Args:
            timestamp: New ledger time; None keeps the current time.
        """
        ledger = self.protocol.ledger
        if timestamp is not None:
            ledger.advance_time(timestamp)
        report = KeeperStep(timestamp=ledger.current_time)

        for loan_id in self.protocol.overdue_loans():
            self._recall(report, loan_id, self.protocol.call_late_payment)

        if self.recall_undercollateralized:
            for loan_id in self.protocol.undercollateralized_loans():
                self._recall(report, loan_id, self.protocol.call_undercollateralized_loan)

        self.history.append(report)
        return report

    def _recall(self, report: KeeperStep, loan_id: int,
                call: Callable[..., object]) -> None:
        try:
            call(self.keeper, loan_id, origin_type=OriginType.KEEPER)
        except LedgerError as exc:
            report.failed.append((loan_id, str(exc)))
            if self.verbose:
                print(f"[KEEPER] recall of loan {loan_id} failed: {exc}")
            return
        report.recalled.append(loan_id)
        report.transactions.append(self.protocol.ledger.transaction_log[-1])
        if self.verbose:
            print(f"[KEEPER] recalled loan {loan_id}")

    def run(self, timestamps: List[datetime]) -> List[KeeperStep]:
        """Step through a sequence of timestamps."""
        return [self.step(ts) for ts in timestamps]

    @property
    def recalled_loan_ids(self) -> List[int]:
        return [loan_id for step in self.history for loan_id in step.recalled]
