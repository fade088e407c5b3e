"""
Migration Ledger Asset Collaborators

The migration ledger only needs a small transfer surface from the source and
destination assets. ``AssetLedger`` describes that surface; production
deployments bind it to a real token client. ``InMemoryAssetLedger`` is a
complete in-process fungible asset with standard balance/allowance semantics,
used by the scenario simulator and the test suite.

Python has no implicit message sender, so every mutating call names the
acting identity explicitly.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol, Tuple

from tokenmigration.errors import AssetTransferError, InsufficientAllowanceOrBalance
from tokenmigration.hardening import (
    NULL_ADDRESS,
    Validators,
    derive_address,
    normalize_address,
)


class AssetLedger(Protocol):
    """Minimal fungible-asset interface required by the migration ledger."""

    @property
    def address(self) -> str:
        ...

    def balance_of(self, holder: str) -> int:
        ...

    def total_supply(self) -> int:
        ...

    def allowance(self, owner: str, spender: str) -> int:
        ...

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        ...

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        ...

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        ...


class InMemoryAssetLedger:
    """Thread-safe in-memory fungible asset.

    The whole initial supply is minted to ``owner`` at creation and the supply
    is fixed afterwards.

    Usage:
        token = InMemoryAssetLedger(1_000_000, owner=deployer)
        token.transfer(deployer, holder, 20_000)
        token.approve(holder, spender, 20_000)
        token.transfer_from(spender, holder, spender, 20_000)
    """

    def __init__(
        self,
        initial_supply: int,
        owner: str,
        address: Optional[str] = None,
        symbol: str = "",
    ):
        supply = Validators.validate_int(initial_supply, "initial_supply")
        supply.raise_if_invalid()
        owner = normalize_address(owner, "owner")

        self.symbol = symbol
        self._address = normalize_address(
            address or derive_address(f"asset:{symbol}:{owner}:{initial_supply}"),
            "address",
        )
        self._total_supply = supply.sanitized_value
        self._balances: Dict[str, int] = {owner: self._total_supply}
        self._allowances: Dict[Tuple[str, str], int] = {}
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"InMemoryAssetLedger(symbol={self.symbol!r}, address={self._address!r})"

    @property
    def address(self) -> str:
        return self._address

    def total_supply(self) -> int:
        return self._total_supply

    def balance_of(self, holder: str) -> int:
        with self._lock:
            return self._balances.get(normalize_address(holder, "holder"), 0)

    def allowance(self, owner: str, spender: str) -> int:
        key = (normalize_address(owner, "owner"), normalize_address(spender, "spender"))
        with self._lock:
            return self._allowances.get(key, 0)

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        """Set (not add to) the amount ``spender`` may move out of ``owner``."""
        self._check_amount(amount)
        owner = normalize_address(owner, "owner")
        spender = normalize_address(spender, "spender")
        if spender == NULL_ADDRESS:
            raise AssetTransferError("Cannot approve the null address")
        with self._lock:
            self._allowances[(owner, spender)] = amount
        return True

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        self._check_amount(amount)
        sender = normalize_address(sender, "sender")
        to = normalize_address(to, "to")
        with self._lock:
            self._move(sender, to, amount)
        return True

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        """Move ``amount`` out of ``owner`` on behalf of ``spender``.

        The allowance and the balance are both checked before anything moves,
        so a failed call changes nothing.
        """
        self._check_amount(amount)
        spender = normalize_address(spender, "spender")
        owner = normalize_address(owner, "owner")
        to = normalize_address(to, "to")
        with self._lock:
            allowed = self._allowances.get((owner, spender), 0)
            balance = self._balances.get(owner, 0)
            if amount > allowed or amount > balance:
                raise InsufficientAllowanceOrBalance(owner, amount, balance, allowed)
            self._move(owner, to, amount)
            self._allowances[(owner, spender)] = allowed - amount
        return True

    def _move(self, sender: str, to: str, amount: int) -> None:
        if to == NULL_ADDRESS:
            raise AssetTransferError("Cannot transfer to the null address")
        balance = self._balances.get(sender, 0)
        if amount > balance:
            raise InsufficientAllowanceOrBalance(sender, amount, balance)
        self._balances[sender] = balance - amount
        self._balances[to] = self._balances.get(to, 0) + amount

    @staticmethod
    def _check_amount(amount: int) -> None:
        Validators.validate_int(amount, "amount").raise_if_invalid()
