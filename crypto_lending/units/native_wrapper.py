"""
native_wrapper.py - Wrapped representation of the chain's native value

The native value (ETH) moves without allowances; pools and the loan book
only ever hold its fungible wrapper (WETH). Wrapping parks native value in
the wrapper's reserve wallet and issues the same amount of wrapper from the
system wallet; unwrapping burns wrapper and releases native value from the
reserve. At all times:

    balance(reserve, native) == circulating supply of the wrapper
"""

from __future__ import annotations
from decimal import Decimal

from ..core import (
    LedgerView, Unit, TransactionDraft,
    SYSTEM_WALLET, UNIT_TYPE_WRAPPED_NATIVE, UNIT_TYPE_NATIVE,
    NotNativeLiquidityProvider, UnitNotRegistered,
    _freeze_state,
)


def reserve_wallet(wrapped_symbol: str) -> str:
    """Wallet that holds the native value backing a wrapper."""
    return f"reserve:{wrapped_symbol}"


def create_wrapped_native(
    symbol: str = "WETH",
    name: str = "Wrapped Ether",
    native_symbol: str = "ETH",
    decimals: int = 18,
) -> Unit:
    """
    Create the wrapper unit for a native token.

    The reserve wallet (see reserve_wallet) must be registered alongside it.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_WRAPPED_NATIVE,
        decimal_places=decimals,
        _frozen_state=_freeze_state({
            'decimals': decimals,
            'native_symbol': native_symbol,
            'reserve_wallet': reserve_wallet(symbol),
        }),
    )


def native_symbol_of(view: LedgerView, wrapped_symbol: str) -> str:
    """
    Native token wrapped by `wrapped_symbol`.

    Raises:
        NotNativeLiquidityProvider: If the unit is not a native wrapper.
    """
    try:
        unit = view.get_unit(wrapped_symbol)
    except UnitNotRegistered:
        raise NotNativeLiquidityProvider(f"{wrapped_symbol} is not registered")
    if unit.unit_type != UNIT_TYPE_WRAPPED_NATIVE:
        raise NotNativeLiquidityProvider(f"{wrapped_symbol} does not wrap native value")
    native = unit.state['native_symbol']
    if view.get_unit(native).unit_type != UNIT_TYPE_NATIVE:
        raise NotNativeLiquidityProvider(f"{native} is not a native token")
    return native


def wrap(draft: TransactionDraft, wrapped_symbol: str, owner: str, dest: str,
         amount: Decimal, contract_id: str) -> None:
    """Take native value from `owner` and credit the same amount of wrapper to `dest`."""
    native = native_symbol_of(draft.view, wrapped_symbol)
    draft.move(amount, native, owner, reserve_wallet(wrapped_symbol), contract_id)
    draft.move(amount, wrapped_symbol, SYSTEM_WALLET, dest, contract_id)


def unwrap(draft: TransactionDraft, wrapped_symbol: str, holder: str, recipient: str,
           amount: Decimal, contract_id: str) -> None:
    """Burn wrapper held by `holder` and pay the native value to `recipient`."""
    native = native_symbol_of(draft.view, wrapped_symbol)
    draft.move(amount, wrapped_symbol, holder, SYSTEM_WALLET, contract_id)
    draft.move(amount, native, reserve_wallet(wrapped_symbol), recipient, contract_id)
