"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending protocol.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Double-entry, pool identity and score backing
2. atomicity.py - Rejected operations change nothing
3. idempotency.py - Closed loans stay closed
4. determinism.py - Replays, loan id order, one active loan per borrower
5. rounding.py - Rounding never favours the borrower
6. temporal.py - Due times and lock periods

These tests use hypothesis for property-based testing over random
sequences of deposits, loans, repayments, recalls and price moves.
"""
