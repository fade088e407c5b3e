"""
Migration Ledger Error Types

Every failure of a ledger operation is raised synchronously to the caller and
leaves the ledger's state untouched. Each error carries a stable ``code``
used as the ``error_code`` field of structured log events.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Optional


class MigrationError(Exception):
    """Base exception for migration ledger failures."""

    code = "migration_error"


class MigrationClosed(MigrationError):
    """migrate() was called after the migration window closed."""

    code = "migration_closed"

    def __init__(self, message: str = "Migration is closed"):
        super().__init__(message)


class Unauthorized(MigrationError):
    """An administrative operation was called by someone other than the treasury."""

    code = "unauthorized"

    def __init__(self, caller: str, action: str = "end_migration"):
        self.caller = caller
        self.action = action
        super().__init__(f"{caller} is not authorized to call {action}")


class MilestonesNotReached(MigrationError):
    """end_migration() was called before the volume cap or the time cap."""

    code = "milestones_not_reached"

    def __init__(self, total_migrated: int, migrate_cap: int, time_cap: int, now: int):
        self.total_migrated = total_migrated
        self.migrate_cap = migrate_cap
        self.time_cap = time_cap
        self.now = now
        super().__init__(
            f"Milestones not reached: migrated {total_migrated}/{migrate_cap}, "
            f"time cap in {time_cap - now}s"
        )


class InsufficientFunding(MigrationError):
    """The ledger's destination balance cannot cover a migration credit."""

    code = "insufficient_funding"

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(
            f"Ledger is underfunded: have {available} destination units, need {required}"
        )


# =============================================================================
# ASSET COLLABORATOR ERRORS
# =============================================================================

class AssetTransferError(MigrationError):
    """A transfer on an asset ledger collaborator failed."""

    code = "asset_transfer_failed"


class InsufficientAllowanceOrBalance(AssetTransferError):
    """A transfer exceeded the holder's balance or the spender's allowance."""

    code = "insufficient_allowance_or_balance"

    def __init__(
        self,
        holder: str,
        requested: int,
        balance: int,
        allowance: Optional[int] = None,
    ):
        self.holder = holder
        self.requested = requested
        self.balance = balance
        self.allowance = allowance
        detail = f"balance {balance}"
        if allowance is not None:
            detail += f", allowance {allowance}"
        super().__init__(
            f"Insufficient allowance or balance for {holder}: requested {requested}, {detail}"
        )
