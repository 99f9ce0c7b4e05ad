"""
conftest.py - Shared pytest fixtures for lending tests

Provides common fixtures used across unit and functional tests:
- Bare ledgers with DAI, USDT, ETH and WETH registered
- Protocols with one or several pools
- Funded protocols (liquidity provider deposit in place)
"""

import pytest
from decimal import Decimal

from crypto_lending import Ledger, StaticPriceOracle

from tests.lending_setup import T0, make_ledger, make_protocol, deposit


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no registrations."""
    return Ledger("test", T0, verbose=False, test_mode=True)


@pytest.fixture
def ledger():
    """Ledger with DAI, USDT, ETH, WETH and wallets alice, bob, carol, lp."""
    return make_ledger()


# =============================================================================
# PROTOCOL FIXTURES
# =============================================================================

@pytest.fixture
def protocol(ledger):
    """Protocol with a single DAI pool."""
    return make_protocol(("DAI",), ledger=ledger)


@pytest.fixture
def funded_protocol(protocol):
    """DAI pool holding 5000 DAI locked by `lp`."""
    deposit(protocol, "lp", "DAI", Decimal("5000"))
    return protocol


@pytest.fixture
def multi_protocol(ledger):
    """Pools for DAI then WETH (registration order matters for collateral)."""
    protocol = make_protocol(("DAI", "WETH"), ledger=ledger)
    deposit(protocol, "lp", "DAI", Decimal("5000"))
    deposit(protocol, "lp", "WETH", Decimal("10"))
    return protocol


@pytest.fixture
def oracle(multi_protocol) -> StaticPriceOracle:
    """The static oracle behind multi_protocol, for moving prices."""
    return multi_protocol.oracle.oracle
