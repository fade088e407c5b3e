"""
Token Migration Ledger

One-way exchange of an old fungible asset for a proportionally inflated
amount of a new one, bounded by a time window and a total-volume cap.

State Machine:

    OPEN_PRE_CAP ──── migration reaches migrate cap ────▶ OPEN_POST_CAP
         │            (time cap := now + grace hours)          │
         │                                                     │
         │  end_migration (treasury, milestone reached)        │
         │  or migrate() observed at/after the time cap        │
         ▼                                                     ▼
       CLOSED ◀────────────────────────────────────────────────┘

    CLOSED is terminal. Nothing reopens a ledger.

Each migration consumes the caller's entire eligible source balance (bounded
by the allowance granted to the ledger) and credits ``amount *
inflation_factor`` destination units out of the ledger's pre-funded balance.
When a swap router is configured, ``tax_rate`` basis points of the credit go
to the treasury instead.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from tokenmigration.assets import AssetLedger
from tokenmigration.clock import SECONDS_PER_DAY, SECONDS_PER_HOUR, Clock, SystemClock
from tokenmigration.config import MigrationConfig, get_config
from tokenmigration.errors import (
    InsufficientAllowanceOrBalance,
    InsufficientFunding,
    MigrationClosed,
    MilestonesNotReached,
    Unauthorized,
)
from tokenmigration.events import (
    Event,
    EventBus,
    MigrateCapReached,
    MigrationEnded,
    TokensMigrated,
)
from tokenmigration.hardening import (
    NULL_ADDRESS,
    InvariantChecker,
    ValidationError,
    ValidationErrors,
    Validators,
    collect,
    derive_address,
    normalize_address,
)
from tokenmigration.observability import (
    AuditLogger,
    Component,
    get_correlation_id,
    get_logger,
    timed_operation,
)

logger = get_logger("ledger", Component.LEDGER)

BASIS_POINTS = 10_000
DEFAULT_GRACE_HOURS = 42


# =============================================================================
# LEDGER STATES
# =============================================================================

class LedgerState(Enum):
    """Lifecycle of a migration ledger."""
    OPEN_PRE_CAP = "open_pre_cap"
    OPEN_POST_CAP = "open_post_cap"
    CLOSED = "closed"

    def is_open(self) -> bool:
        return self is not LedgerState.CLOSED


class CloseReason(Enum):
    """Why the migration window closed."""
    TIME_CAP_ELAPSED = "time_cap_elapsed"
    TREASURY = "treasury"


@dataclass(frozen=True)
class StateTransition:
    """Record of a state transition."""
    from_state: LedgerState
    to_state: LedgerState
    timestamp: int
    reason: str
    actor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp,
            "reason": self.reason,
            "actor": self.actor,
        }


@dataclass(frozen=True)
class MigrationReceipt:
    """Outcome of one successful migration."""
    sequence: int
    migrant: str
    amount: int
    credit: int
    tax: int
    timestamp: int
    reached_cap: bool = False

    @property
    def net_credit(self) -> int:
        """Destination units actually delivered to the migrant."""
        return self.credit - self.tax

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "migrant": self.migrant,
            "amount": self.amount,
            "credit": self.credit,
            "tax": self.tax,
            "net_credit": self.net_credit,
            "timestamp": self.timestamp,
            "reached_cap": self.reached_cap,
        }


# =============================================================================
# MIGRATION LEDGER
# =============================================================================

class MigrationLedger:
    """
    The migration state machine.

    Mutating operations are serialized by an internal lock and either complete
    fully or leave the ledger untouched.

    Example:
        ledger = MigrationLedger(old, new, 1000, 42, 30, 20, treasury)
        new.transfer(deployer, ledger.address, new.total_supply())

        old.approve(holder, ledger.address, old.balance_of(holder))
        receipt = ledger.migrate(holder)

        # once the cap is reached or the window has elapsed
        ledger.end_migration(treasury)
    """

    VALID_TRANSITIONS: Dict[LedgerState, Set[LedgerState]] = {
        LedgerState.OPEN_PRE_CAP: {LedgerState.OPEN_POST_CAP, LedgerState.CLOSED},
        LedgerState.OPEN_POST_CAP: {LedgerState.CLOSED},
        LedgerState.CLOSED: set(),
    }

    def __init__(
        self,
        source: AssetLedger,
        destination: AssetLedger,
        inflation_factor: int,
        tax_rate: int,
        window_days: int,
        cap_percentage: int,
        treasury: str,
        swap_router: Optional[str] = None,
        *,
        grace_hours: int = DEFAULT_GRACE_HOURS,
        clock: Optional[Clock] = None,
        address: Optional[str] = None,
        event_bus: Optional[EventBus] = None,
        audit: Optional[AuditLogger] = None,
    ):
        (
            inflation_factor,
            tax_rate,
            window_days,
            grace_hours,
            cap_percentage,
            treasury,
            swap_router,
            source_address,
            destination_address,
        ) = collect(
            Validators.validate_int(inflation_factor, "inflation_factor", min_value=1),
            Validators.validate_basis_points(tax_rate, "tax_rate"),
            Validators.validate_int(window_days, "window_days"),
            Validators.validate_int(grace_hours, "grace_hours"),
            Validators.validate_percentage(cap_percentage, "cap_percentage"),
            Validators.validate_address(treasury, "treasury", allow_null=False),
            Validators.validate_address(swap_router or NULL_ADDRESS, "swap_router"),
            Validators.validate_address(source.address, "source_asset", allow_null=False),
            Validators.validate_address(destination.address, "destination_asset", allow_null=False),
        )
        if source_address == destination_address:
            raise ValidationErrors([
                ValidationError("destination_asset", "Must differ from the source asset", destination_address)
            ])

        self._source = source
        self._destination = destination
        self._source_address: str = source_address
        self._destination_address: str = destination_address
        self._inflation_factor: int = inflation_factor
        self._tax_rate: int = tax_rate
        self._grace_hours: int = grace_hours
        self._treasury: str = treasury
        self._swap_router: str = swap_router
        self._clock: Clock = clock or SystemClock()
        self._created_at: int = self._clock.now()
        self._address = normalize_address(
            address or derive_address(
                f"ledger:{source_address}:{destination_address}:{treasury}:{self._created_at}"
            ),
            "address",
        )

        self._event_bus = event_bus
        self._audit = audit or AuditLogger()
        self._lock = threading.RLock()

        self._migrate_cap: int = source.total_supply() * cap_percentage // 100
        self._time_cap: int = self._created_at + window_days * SECONDS_PER_DAY
        self._total_migrated = 0
        self._migrant_count = 0
        self._state = LedgerState.OPEN_PRE_CAP
        self._cap_reached_at: Optional[int] = None
        self._transitions: List[StateTransition] = []
        self._receipts: List[MigrationReceipt] = []

        logger.info(
            "Migration ledger created",
            ledger=self._address,
            source_asset=self._source_address,
            destination_asset=self._destination_address,
            migrate_cap=self._migrate_cap,
            time_cap=self._time_cap,
            inflation_factor=self._inflation_factor,
            router_enabled=self.router_enabled,
        )

    @classmethod
    def from_config(
        cls,
        source: AssetLedger,
        destination: AssetLedger,
        treasury: str,
        swap_router: Optional[str] = None,
        config: Optional[MigrationConfig] = None,
        **kwargs: Any,
    ) -> "MigrationLedger":
        """Create a ledger whose numeric parameters come from configuration."""
        ledger_config = (config or get_config()).ledger
        return cls(
            source,
            destination,
            ledger_config.inflation_factor.get(),
            ledger_config.tax_rate.get(),
            ledger_config.window_days.get(),
            ledger_config.cap_percentage.get(),
            treasury,
            swap_router,
            grace_hours=ledger_config.grace_hours.get(),
            **kwargs,
        )

    # =========================================================================
    # READ ACCESSORS
    # =========================================================================

    @property
    def address(self) -> str:
        """Identity of the ledger itself (custodian of migrated source units)."""
        return self._address

    @property
    def source_asset(self) -> str:
        return self._source_address

    @property
    def destination_asset(self) -> str:
        return self._destination_address

    @property
    def treasury(self) -> str:
        return self._treasury

    @property
    def swap_router(self) -> str:
        """Swap router identity; the null address when unset."""
        return self._swap_router

    @property
    def router_enabled(self) -> bool:
        return self._swap_router != NULL_ADDRESS

    @property
    def inflation_factor(self) -> int:
        return self._inflation_factor

    @property
    def tax_rate(self) -> int:
        """Tax rate in basis points."""
        return self._tax_rate

    @property
    def grace_hours(self) -> int:
        return self._grace_hours

    @property
    def migrate_cap(self) -> int:
        return self._migrate_cap

    @property
    def time_cap(self) -> int:
        with self._lock:
            return self._time_cap

    @property
    def total_migrated(self) -> int:
        with self._lock:
            return self._total_migrated

    @property
    def migrant_count(self) -> int:
        with self._lock:
            return self._migrant_count

    @property
    def state(self) -> LedgerState:
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state.is_open()

    @property
    def cap_reached(self) -> bool:
        return self.cap_reached_at is not None

    @property
    def cap_reached_at(self) -> Optional[int]:
        with self._lock:
            return self._cap_reached_at

    @property
    def created_at(self) -> int:
        return self._created_at

    @property
    def transitions(self) -> List[StateTransition]:
        with self._lock:
            return list(self._transitions)

    @property
    def receipts(self) -> List[MigrationReceipt]:
        with self._lock:
            return list(self._receipts)

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    @timed_operation(logger, "migrate")
    def migrate(self, caller: str) -> Optional[MigrationReceipt]:
        """
        Exchange the caller's entire eligible source balance.

        Returns the receipt of the migration, or None when the call found the
        time cap elapsed: such a call moves nothing and closes the ledger.

        Raises:
            MigrationClosed: The ledger is already closed.
            InsufficientAllowanceOrBalance: Nothing to migrate, or the pull
                from the source asset failed.
            InsufficientFunding: The ledger cannot cover the credit.
        """
        caller = normalize_address(caller, "caller")
        pending: List[Event] = []
        receipt: Optional[MigrationReceipt] = None

        with self._lock:
            now = self._clock.now()

            if not self._state.is_open():
                logger.warning(
                    "Migration rejected: window closed",
                    error_code=MigrationClosed.code,
                    ledger=self._address,
                    migrant=caller,
                )
                raise MigrationClosed()

            if now >= self._time_cap:
                pending.append(self._close(now, CloseReason.TIME_CAP_ELAPSED, caller))
            else:
                receipt, cap_event = self._execute_migration(caller, now)
                pending.append(TokensMigrated(
                    correlation_id=get_correlation_id(),
                    ledger=self._address,
                    migrant=caller,
                    amount=receipt.amount,
                    credit=receipt.net_credit,
                    tax=receipt.tax,
                    total_migrated=self._total_migrated,
                    migrant_count=self._migrant_count,
                    block_time=now,
                ))
                if cap_event is not None:
                    pending.append(cap_event)

        self._publish(pending)
        return receipt

    @timed_operation(logger, "end_migration")
    def end_migration(self, caller: str) -> None:
        """
        Close the migration window on behalf of the treasury.

        Allowed once the migrate cap has been reached or the time cap has
        elapsed. Calling it again on a closed ledger succeeds and changes
        nothing.

        Raises:
            Unauthorized: The caller is not the treasury.
            MilestonesNotReached: Neither the migrate cap nor the time cap
                has been reached.
        """
        caller = normalize_address(caller, "caller")
        pending: List[Event] = []

        with self._lock:
            now = self._clock.now()

            if caller != self._treasury:
                self._audit.log(caller, "end_migration", self._address, "denied")
                logger.warning(
                    "end_migration rejected: caller is not the treasury",
                    error_code=Unauthorized.code,
                    ledger=self._address,
                    caller=caller,
                )
                raise Unauthorized(caller, "end_migration")

            if self._cap_reached_at is None and now < self._time_cap:
                self._audit.log(
                    caller, "end_migration", self._address, "failure",
                    total_migrated=self._total_migrated,
                    migrate_cap=self._migrate_cap,
                    time_cap=self._time_cap,
                )
                logger.warning(
                    "end_migration rejected: milestones not reached",
                    error_code=MilestonesNotReached.code,
                    ledger=self._address,
                    total_migrated=self._total_migrated,
                    migrate_cap=self._migrate_cap,
                    time_cap=self._time_cap,
                )
                raise MilestonesNotReached(
                    self._total_migrated, self._migrate_cap, self._time_cap, now
                )

            if self._state.is_open():
                pending.append(self._close(now, CloseReason.TREASURY, caller))
            self._audit.log(caller, "end_migration", self._address, "success")

        self._publish(pending)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _execute_migration(self, caller: str, now: int):
        """Move the assets and record the migration. Caller holds the lock."""
        balance = self._source.balance_of(caller)
        allowance = self._source.allowance(caller, self._address)
        amount = min(balance, allowance)
        if amount == 0:
            logger.warning(
                "Migration rejected: nothing to migrate",
                error_code=InsufficientAllowanceOrBalance.code,
                ledger=self._address,
                migrant=caller,
                balance=balance,
                allowance=allowance,
            )
            raise InsufficientAllowanceOrBalance(caller, balance, balance, allowance)

        credit = amount * self._inflation_factor
        tax = credit * self._tax_rate // BASIS_POINTS if self.router_enabled else 0

        funding = self._destination.balance_of(self._address)
        if funding < credit:
            logger.error(
                "Migration rejected: ledger underfunded",
                error_code=InsufficientFunding.code,
                ledger=self._address,
                migrant=caller,
                available=funding,
                required=credit,
            )
            raise InsufficientFunding(funding, credit)

        self._source.transfer_from(self._address, caller, self._address, amount)
        paid: List[Tuple[str, int]] = []
        try:
            self._destination.transfer(self._address, caller, credit - tax)
            paid.append((caller, credit - tax))
            if tax:
                self._destination.transfer(self._address, self._treasury, tax)
                paid.append((self._treasury, tax))
        except Exception:
            logger.error(
                "Destination transfer failed; reverting migration",
                error_code="destination_transfer_failed",
                exc_info=True,
                ledger=self._address,
                migrant=caller,
                amount=amount,
            )
            self._compensate_payout(caller, amount, allowance, paid)
            raise

        previous_total = self._total_migrated
        self._total_migrated += amount
        InvariantChecker.check_monotonic_increase(
            "total_migrated", previous_total, self._total_migrated
        )
        self._migrant_count += 1

        cap_event = None
        if self._state is LedgerState.OPEN_PRE_CAP and self._total_migrated >= self._migrate_cap:
            cap_event = self._reach_cap(now, caller)

        receipt = MigrationReceipt(
            sequence=self._migrant_count,
            migrant=caller,
            amount=amount,
            credit=credit,
            tax=tax,
            timestamp=now,
            reached_cap=cap_event is not None,
        )
        self._receipts.append(receipt)

        logger.info(
            "Tokens migrated",
            operation="migrate",
            ledger=self._address,
            migrant=caller,
            amount=amount,
            credit=credit - tax,
            tax=tax,
            total_migrated=self._total_migrated,
            migrant_count=self._migrant_count,
        )
        return receipt, cap_event

    def _compensate_payout(
        self,
        caller: str,
        amount: int,
        allowance: int,
        paid: List[Tuple[str, int]],
    ) -> None:
        """
        Undo a partially executed migration.

        Every step is attempted even when an earlier one fails; failures are
        logged and never replace the error that triggered the compensation.
        """
        steps: List[Tuple[str, Callable[[], Any]]] = [
            (
                f"reclaim_payout:{recipient}",
                lambda recipient=recipient, value=value: self._destination.transfer(
                    recipient, self._address, value
                ),
            )
            for recipient, value in reversed(paid)
        ]
        steps.append(("refund_source", lambda: self._source.transfer(self._address, caller, amount)))
        steps.append(("restore_allowance", lambda: self._source.approve(caller, self._address, allowance)))

        for action, step in steps:
            try:
                step()
            except Exception as e:
                logger.error(
                    "Compensation step failed",
                    error_code="compensation_failed",
                    ledger=self._address,
                    migrant=caller,
                    action=action,
                    reason=str(e),
                )

    def _reach_cap(self, now: int, actor: str) -> MigrateCapReached:
        """Enter the post-cap grace period, replacing the original deadline."""
        self._transition(LedgerState.OPEN_POST_CAP, now, "Migrate cap reached", actor)
        self._cap_reached_at = now
        previous_time_cap = self._time_cap
        self._time_cap = now + self._grace_hours * SECONDS_PER_HOUR

        logger.info(
            "Migrate cap reached; grace period started",
            ledger=self._address,
            total_migrated=self._total_migrated,
            migrate_cap=self._migrate_cap,
            previous_time_cap=previous_time_cap,
            time_cap=self._time_cap,
        )
        return MigrateCapReached(
            correlation_id=get_correlation_id(),
            ledger=self._address,
            total_migrated=self._total_migrated,
            migrate_cap=self._migrate_cap,
            new_time_cap=self._time_cap,
            block_time=now,
        )

    def _close(self, now: int, reason: CloseReason, actor: str) -> MigrationEnded:
        self._transition(LedgerState.CLOSED, now, reason.value, actor)
        if reason is CloseReason.TIME_CAP_ELAPSED:
            self._audit.log(actor, "close_on_expiry", self._address, "success", time_cap=self._time_cap)

        logger.info(
            "Migration closed",
            ledger=self._address,
            reason=reason.value,
            actor=actor,
            total_migrated=self._total_migrated,
            migrant_count=self._migrant_count,
        )
        return MigrationEnded(
            correlation_id=get_correlation_id(),
            ledger=self._address,
            reason=reason.value,
            actor=actor,
            total_migrated=self._total_migrated,
            migrant_count=self._migrant_count,
            block_time=now,
        )

    def _transition(
        self,
        target_state: LedgerState,
        now: int,
        reason: str,
        actor: Optional[str],
    ) -> None:
        InvariantChecker.check_state_transition(self._state, target_state, self.VALID_TRANSITIONS)
        self._transitions.append(StateTransition(
            from_state=self._state,
            to_state=target_state,
            timestamp=now,
            reason=reason,
            actor=actor,
        ))
        self._state = target_state

    def _publish(self, events: List[Event]) -> None:
        if self._event_bus is None:
            return
        for event in events:
            self._event_bus.publish(event)

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot of the ledger's parameters and state."""
        with self._lock:
            return {
                "address": self._address,
                "state": self._state.value,
                "is_open": self._state.is_open(),
                "cap_reached": self._cap_reached_at is not None,
                "cap_reached_at": self._cap_reached_at,
                "source_asset": self._source_address,
                "destination_asset": self._destination_address,
                "treasury": self._treasury,
                "swap_router": self._swap_router,
                "inflation_factor": self._inflation_factor,
                "tax_rate": self._tax_rate,
                "grace_hours": self._grace_hours,
                "migrate_cap": self._migrate_cap,
                "time_cap": self._time_cap,
                "created_at": self._created_at,
                "total_migrated": self._total_migrated,
                "migrant_count": self._migrant_count,
                "transitions": [t.to_dict() for t in self._transitions],
            }
