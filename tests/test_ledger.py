"""
Tests for the migration ledger state machine.

Verifies that:
1. Creation parameters are validated and exposed unchanged.
2. Each migration moves the caller's whole eligible balance and credits
   exactly amount * inflation_factor (minus tax when a router is set).
3. Reaching the migrate cap replaces the time cap with now + grace hours.
4. The first migration at or after the time cap closes the ledger and
   moves nothing; later migrations are rejected.
5. Only the treasury may end the migration, and only after a milestone.
6. A failed migration leaves balances and counters untouched.
"""
import threading

import pytest

from tokenmigration.assets import InMemoryAssetLedger
from tokenmigration.clock import SECONDS_PER_DAY, SECONDS_PER_HOUR
from tokenmigration.errors import (
    AssetTransferError,
    InsufficientAllowanceOrBalance,
    InsufficientFunding,
    MigrationClosed,
    MilestonesNotReached,
    Unauthorized,
)
from tokenmigration.events import EventBus, MigrateCapReached, MigrationEnded, TokensMigrated
from tokenmigration.hardening import (
    NULL_ADDRESS,
    InvariantViolation,
    ValidationErrors,
    derive_address,
)
from tokenmigration.ledger import CloseReason, LedgerState, MigrationLedger

START = 1_700_000_000
APPROVAL = 1_000_000
EXPECTED_CREDITS = (20_000_000, 50_000_000, 25_000_000, 69_000, 100_000_000, 120_000_000)


def _migrate_all(ledger, old_asset, migrants):
    receipts = []
    for migrant in migrants:
        old_asset.approve(migrant, ledger.address, APPROVAL)
        receipts.append(ledger.migrate(migrant))
    return receipts


def _make_ledger(old_asset, new_asset, treasury, clock, deployer, funding=None, **kwargs):
    params = dict(inflation_factor=1000, tax_rate=42, window_days=30, cap_percentage=20)
    params.update(kwargs.pop("params", {}))
    ledger = MigrationLedger(
        old_asset,
        new_asset,
        params["inflation_factor"],
        params["tax_rate"],
        params["window_days"],
        params["cap_percentage"],
        treasury,
        kwargs.pop("swap_router", None),
        clock=clock,
        **kwargs,
    )
    new_asset.transfer(deployer, ledger.address, new_asset.total_supply() if funding is None else funding)
    return ledger


class FlakyAsset(InMemoryAssetLedger):
    """Destination asset that rejects transfers to chosen recipients."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.rejected = set()

    def transfer(self, sender, to, amount):
        if to in self.rejected:
            raise AssetTransferError(f"payout to {to} rejected")
        return super().transfer(sender, to, amount)


# =============================================================================
# CREATION
# =============================================================================

class TestCreation:
    """Tests for ledger creation and read accessors."""

    def test_all_getters(self, ledger, old_asset, new_asset, treasury):
        """A new ledger exposes its parameters and starts empty and open."""
        assert ledger.source_asset == old_asset.address
        assert ledger.destination_asset == new_asset.address
        assert ledger.cap_reached is False
        assert ledger.treasury == treasury
        assert ledger.swap_router == NULL_ADDRESS
        assert ledger.inflation_factor == 1000
        assert ledger.total_migrated == 0
        assert ledger.migrant_count == 0
        assert ledger.time_cap == START + 30 * SECONDS_PER_DAY
        assert ledger.migrate_cap == 200_000
        assert ledger.tax_rate == 42
        assert ledger.is_open is True
        assert ledger.state == LedgerState.OPEN_PRE_CAP
        assert ledger.grace_hours == 42
        assert ledger.cap_reached_at is None

    def test_migrate_cap_rounds_down(self, old_asset, new_asset, treasury, clock, deployer):
        """The cap is floor(supply * percentage / 100)."""
        odd = InMemoryAssetLedger(999, deployer, symbol="ODD")
        ledger = MigrationLedger(odd, new_asset, 1, 0, 1, 33, treasury, clock=clock)
        assert ledger.migrate_cap == 329

    def test_invalid_parameters_reported_together(self, old_asset, new_asset, treasury, clock):
        """Every invalid parameter is reported in one error."""
        with pytest.raises(ValidationErrors) as exc_info:
            MigrationLedger(old_asset, new_asset, 0, 10_001, 30, 101, treasury, clock=clock)
        fields = {e.field for e in exc_info.value.errors}
        assert fields == {"inflation_factor", "tax_rate", "cap_percentage"}

    def test_null_treasury_rejected(self, old_asset, new_asset, clock):
        with pytest.raises(ValidationErrors, match="treasury"):
            MigrationLedger(old_asset, new_asset, 1000, 42, 30, 20, NULL_ADDRESS, clock=clock)

    def test_malformed_treasury_rejected(self, old_asset, new_asset, clock):
        with pytest.raises(ValidationErrors, match="treasury"):
            MigrationLedger(old_asset, new_asset, 1000, 42, 30, 20, "treasury", clock=clock)

    def test_same_asset_rejected(self, old_asset, treasury, clock):
        with pytest.raises(ValidationErrors, match="destination_asset"):
            MigrationLedger(old_asset, old_asset, 1000, 42, 30, 20, treasury, clock=clock)

    def test_bool_is_not_an_integer(self, old_asset, new_asset, treasury, clock):
        with pytest.raises(ValidationErrors, match="inflation_factor"):
            MigrationLedger(old_asset, new_asset, True, 42, 30, 20, treasury, clock=clock)

    def test_explicit_address_is_normalized(self, old_asset, new_asset, treasury, clock):
        address = "0x" + "AB" * 20
        ledger = MigrationLedger(
            old_asset, new_asset, 1000, 42, 30, 20, treasury, clock=clock, address=address,
        )
        assert ledger.address == address.lower()

    def test_from_config_uses_defaults(self, old_asset, new_asset, treasury, clock):
        ledger = MigrationLedger.from_config(old_asset, new_asset, treasury, clock=clock)
        assert ledger.inflation_factor == 1000
        assert ledger.tax_rate == 42
        assert ledger.grace_hours == 42
        assert ledger.migrate_cap == 200_000
        assert ledger.time_cap == START + 30 * SECONDS_PER_DAY

    def test_from_config_honours_environment(self, old_asset, new_asset, treasury, clock, monkeypatch):
        monkeypatch.setenv("TOKENMIGRATION_WINDOW_DAYS", "7")
        monkeypatch.setenv("TOKENMIGRATION_CAP_PERCENTAGE", "50")
        ledger = MigrationLedger.from_config(old_asset, new_asset, treasury, clock=clock)
        assert ledger.time_cap == START + 7 * SECONDS_PER_DAY
        assert ledger.migrate_cap == 500_000


# =============================================================================
# MIGRATION
# =============================================================================

class TestMigrate:
    """Tests for migrate()."""

    def test_basic_migration(self, ledger, old_asset, new_asset, migrants):
        """The whole balance moves and is credited 1000x."""
        weirdo1 = migrants[0]
        old_asset.approve(weirdo1, ledger.address, APPROVAL)

        receipt = ledger.migrate(weirdo1)

        assert receipt.amount == 20_000
        assert receipt.credit == 20_000_000
        assert receipt.tax == 0
        assert receipt.sequence == 1
        assert receipt.timestamp == START
        assert old_asset.balance_of(weirdo1) == 0
        assert new_asset.balance_of(weirdo1) == 20_000_000
        assert old_asset.balance_of(ledger.address) == 20_000
        assert ledger.cap_reached is False
        assert ledger.total_migrated == 20_000
        assert ledger.migrant_count == 1
        assert ledger.is_open is True

    def test_amount_bounded_by_allowance(self, ledger, old_asset, new_asset, migrants):
        """With a smaller allowance only the allowance is migrated."""
        weirdo1 = migrants[0]
        old_asset.approve(weirdo1, ledger.address, 5_000)

        receipt = ledger.migrate(weirdo1)

        assert receipt.amount == 5_000
        assert old_asset.balance_of(weirdo1) == 15_000
        assert new_asset.balance_of(weirdo1) == 5_000_000
        assert old_asset.allowance(weirdo1, ledger.address) == 0

    def test_excess_allowance_not_consumed(self, ledger, old_asset, migrants):
        """Approving more than the balance migrates only the balance."""
        weirdo4 = migrants[3]
        old_asset.approve(weirdo4, ledger.address, APPROVAL)

        receipt = ledger.migrate(weirdo4)

        assert receipt.amount == 69
        assert old_asset.allowance(weirdo4, ledger.address) == APPROVAL - 69

    def test_no_allowance_rejected(self, ledger, old_asset, migrants):
        weirdo1 = migrants[0]
        with pytest.raises(InsufficientAllowanceOrBalance):
            ledger.migrate(weirdo1)
        assert old_asset.balance_of(weirdo1) == 20_000
        assert ledger.total_migrated == 0
        assert ledger.migrant_count == 0

    def test_no_balance_rejected(self, ledger, old_asset):
        nobody = derive_address("nobody")
        old_asset.approve(nobody, ledger.address, APPROVAL)
        with pytest.raises(InsufficientAllowanceOrBalance):
            ledger.migrate(nobody)
        assert ledger.migrant_count == 0

    def test_repeat_migration_counts_twice(self, ledger, old_asset, deployer, migrants):
        """Migrant count counts migrations, not distinct holders."""
        weirdo1 = migrants[0]
        old_asset.approve(weirdo1, ledger.address, APPROVAL)
        ledger.migrate(weirdo1)
        old_asset.transfer(deployer, weirdo1, 1_000)
        ledger.migrate(weirdo1)

        assert ledger.migrant_count == 2
        assert ledger.total_migrated == 21_000

    def test_migration_passing_the_cap(self, ledger, old_asset, new_asset, migrants):
        """The sixth migration crosses the 200,000 cap and starts the grace period."""
        receipts = []
        for i, migrant in enumerate(migrants):
            old_asset.approve(migrant, ledger.address, APPROVAL)
            receipts.append(ledger.migrate(migrant))
            assert ledger.cap_reached is (i == len(migrants) - 1)

        for migrant, credit in zip(migrants, EXPECTED_CREDITS):
            assert old_asset.balance_of(migrant) == 0
            assert new_asset.balance_of(migrant) == credit

        assert old_asset.balance_of(ledger.address) == 315_069
        assert ledger.total_migrated == 315_069
        assert ledger.migrant_count == 6
        assert ledger.is_open is True
        assert ledger.state == LedgerState.OPEN_POST_CAP
        assert ledger.time_cap == START + 42 * SECONDS_PER_HOUR
        assert ledger.cap_reached_at == START
        assert [r.reached_cap for r in receipts] == [False] * 5 + [True]

    def test_cap_resets_time_cap_from_crossing_time(self, ledger, old_asset, migrants, clock):
        _migrate_all(ledger, old_asset, migrants[:5])
        clock.advance(days=3)
        old_asset.approve(migrants[5], ledger.address, APPROVAL)
        ledger.migrate(migrants[5])

        assert ledger.time_cap == START + 3 * SECONDS_PER_DAY + 42 * SECONDS_PER_HOUR

    def test_migrations_after_cap_do_not_move_time_cap(
        self, ledger, old_asset, deployer, migrants, clock
    ):
        _migrate_all(ledger, old_asset, migrants)
        time_cap = ledger.time_cap

        clock.advance(hours=10)
        late = derive_address("late")
        old_asset.transfer(deployer, late, 1_000)
        old_asset.approve(late, ledger.address, APPROVAL)
        receipt = ledger.migrate(late)

        assert receipt.amount == 1_000
        assert receipt.reached_cap is False
        assert ledger.time_cap == time_cap
        assert ledger.total_migrated == 316_069

    def test_zero_percent_cap_reached_by_first_migration(
        self, old_asset, new_asset, treasury, clock, deployer, migrants
    ):
        ledger = _make_ledger(
            old_asset, new_asset, treasury, clock, deployer, params={"cap_percentage": 0},
        )
        assert ledger.cap_reached is False
        old_asset.approve(migrants[3], ledger.address, APPROVAL)
        ledger.migrate(migrants[3])
        assert ledger.cap_reached is True

    def test_address_case_is_ignored(self, ledger, old_asset, new_asset, migrants):
        weirdo1 = migrants[0]
        old_asset.approve(weirdo1, ledger.address, APPROVAL)
        ledger.migrate("0x" + weirdo1[2:].upper())
        assert new_asset.balance_of(weirdo1) == 20_000_000

    def test_malformed_caller_rejected(self, ledger):
        with pytest.raises(ValidationErrors):
            ledger.migrate("weirdo1")


# =============================================================================
# LAZY EXPIRY
# =============================================================================

class TestLazyExpiry:
    """Tests for closing on the first call observed at or after the time cap."""

    def test_expired_call_closes_without_transfer(self, ledger, old_asset, new_asset, migrants, clock):
        weirdo1 = migrants[0]
        old_asset.approve(weirdo1, ledger.address, APPROVAL)
        clock.advance(days=30)

        assert ledger.migrate(weirdo1) is None

        assert ledger.is_open is False
        assert ledger.state == LedgerState.CLOSED
        assert old_asset.balance_of(weirdo1) == 20_000
        assert new_asset.balance_of(weirdo1) == 0
        assert old_asset.allowance(weirdo1, ledger.address) == APPROVAL
        assert ledger.total_migrated == 0
        assert ledger.migrant_count == 0

    def test_next_call_after_close_rejected(self, ledger, old_asset, migrants, clock):
        old_asset.approve(migrants[0], ledger.address, APPROVAL)
        clock.advance(days=31)
        ledger.migrate(migrants[0])

        with pytest.raises(MigrationClosed):
            ledger.migrate(migrants[0])

    def test_boundary_is_inclusive(self, ledger, old_asset, migrants, clock):
        """At exactly the time cap the ledger closes; one second earlier it does not."""
        old_asset.approve(migrants[0], ledger.address, APPROVAL)
        clock.set(ledger.time_cap - 1)
        assert ledger.migrate(migrants[0]) is not None

        old_asset.approve(migrants[1], ledger.address, APPROVAL)
        clock.set(ledger.time_cap)
        assert ledger.migrate(migrants[1]) is None
        assert ledger.is_open is False

    def test_grace_period_expiry(self, ledger, old_asset, deployer, migrants, clock):
        """After the cap, a seventh migration beyond the grace period closes the ledger."""
        _migrate_all(ledger, old_asset, migrants)
        seventh = derive_address("weirdo7")
        old_asset.transfer(deployer, seventh, 5_000)
        old_asset.approve(seventh, ledger.address, APPROVAL)

        clock.advance(hours=43)
        assert ledger.migrate(seventh) is None
        assert old_asset.balance_of(seventh) == 5_000
        assert ledger.migrant_count == 6

        with pytest.raises(MigrationClosed):
            ledger.migrate(seventh)

    def test_cap_reached_survives_closure(self, ledger, old_asset, migrants, clock):
        _migrate_all(ledger, old_asset, migrants)
        clock.advance(hours=42)
        ledger.migrate(migrants[0])

        assert ledger.is_open is False
        assert ledger.cap_reached is True

    def test_zero_day_window_closes_on_first_call(
        self, old_asset, new_asset, treasury, clock, deployer, migrants
    ):
        ledger = _make_ledger(
            old_asset, new_asset, treasury, clock, deployer, params={"window_days": 0},
        )
        old_asset.approve(migrants[0], ledger.address, APPROVAL)
        assert ledger.migrate(migrants[0]) is None
        assert ledger.is_open is False

    def test_closure_recorded_with_reason(self, ledger, old_asset, migrants, clock):
        clock.advance(days=30)
        ledger.migrate(migrants[0])

        transition = ledger.transitions[-1]
        assert transition.from_state == LedgerState.OPEN_PRE_CAP
        assert transition.to_state == LedgerState.CLOSED
        assert transition.reason == CloseReason.TIME_CAP_ELAPSED.value
        assert transition.actor == migrants[0]
        assert transition.timestamp == START + 30 * SECONDS_PER_DAY


# =============================================================================
# END MIGRATION
# =============================================================================

class TestEndMigration:
    """Tests for end_migration()."""

    def test_before_milestones_rejected(self, ledger, treasury):
        with pytest.raises(MilestonesNotReached):
            ledger.end_migration(treasury)
        assert ledger.is_open is True

    def test_non_treasury_rejected_after_time_cap(self, ledger, migrants, clock):
        clock.advance(days=30)
        with pytest.raises(Unauthorized):
            ledger.end_migration(migrants[0])
        assert ledger.is_open is True

    def test_authorization_checked_before_milestones(self, ledger, migrants):
        with pytest.raises(Unauthorized):
            ledger.end_migration(migrants[0])

    def test_treasury_after_time_cap(self, ledger, treasury, clock):
        clock.advance(days=30)
        ledger.end_migration(treasury)

        assert ledger.is_open is False
        assert ledger.transitions[-1].reason == CloseReason.TREASURY.value
        assert ledger.transitions[-1].actor == treasury

    def test_treasury_after_cap(self, ledger, old_asset, treasury, migrants):
        _migrate_all(ledger, old_asset, migrants)
        ledger.end_migration(treasury)

        assert ledger.is_open is False
        assert ledger.cap_reached is True
        with pytest.raises(MigrationClosed):
            ledger.migrate(migrants[0])

    def test_end_migration_is_idempotent(self, ledger, treasury, clock):
        clock.advance(days=30)
        ledger.end_migration(treasury)
        ledger.end_migration(treasury)

        assert ledger.is_open is False
        assert len(ledger.transitions) == 1

    def test_end_after_lazy_close_succeeds(self, ledger, treasury, migrants, clock):
        clock.advance(days=30)
        ledger.migrate(migrants[0])
        ledger.end_migration(treasury)
        assert ledger.transitions[-1].reason == CloseReason.TIME_CAP_ELAPSED.value

    def test_treasury_case_is_ignored(self, ledger, treasury, clock):
        clock.advance(days=30)
        ledger.end_migration("0x" + treasury[2:].upper())
        assert ledger.is_open is False

    def test_attempts_are_audited(self, ledger, treasury, migrants, clock):
        with pytest.raises(Unauthorized):
            ledger.end_migration(migrants[0])
        with pytest.raises(MilestonesNotReached):
            ledger.end_migration(treasury)
        clock.advance(days=30)
        ledger.end_migration(treasury)

        outcomes = [(e.actor, e.action, e.outcome) for e in ledger.audit.events]
        assert outcomes == [
            (migrants[0], "end_migration", "denied"),
            (treasury, "end_migration", "failure"),
            (treasury, "end_migration", "success"),
        ]
        assert ledger.audit.verify_chain()


# =============================================================================
# TAX HOOK
# =============================================================================

class TestTaxHook:
    """Tests for the treasury tax taken when a swap router is configured."""

    def test_tax_paid_to_treasury(self, old_asset, new_asset, treasury, clock, deployer, migrants):
        router = derive_address("router")
        ledger = _make_ledger(old_asset, new_asset, treasury, clock, deployer, swap_router=router)
        weirdo1 = migrants[0]
        old_asset.approve(weirdo1, ledger.address, APPROVAL)

        receipt = ledger.migrate(weirdo1)

        assert ledger.swap_router == router
        assert receipt.credit == 20_000_000
        assert receipt.tax == 84_000
        assert receipt.net_credit == 19_916_000
        assert new_asset.balance_of(weirdo1) == 19_916_000
        assert new_asset.balance_of(treasury) == 84_000
        assert new_asset.balance_of(ledger.address) == new_asset.total_supply() - 20_000_000

    def test_no_tax_without_router(self, ledger, old_asset, new_asset, treasury, migrants):
        old_asset.approve(migrants[0], ledger.address, APPROVAL)
        ledger.migrate(migrants[0])
        assert new_asset.balance_of(treasury) == 0

    def test_zero_rate_with_router(self, old_asset, new_asset, treasury, clock, deployer, migrants):
        ledger = _make_ledger(
            old_asset, new_asset, treasury, clock, deployer,
            swap_router=derive_address("router"), params={"tax_rate": 0},
        )
        old_asset.approve(migrants[0], ledger.address, APPROVAL)
        receipt = ledger.migrate(migrants[0])
        assert receipt.tax == 0
        assert new_asset.balance_of(migrants[0]) == 20_000_000


# =============================================================================
# FUNDING AND ATOMICITY
# =============================================================================

class TestFundingAndAtomicity:
    """A migration either completes fully or changes nothing."""

    def test_underfunded_ledger_rejects(self, old_asset, new_asset, treasury, clock, deployer, migrants):
        ledger = _make_ledger(old_asset, new_asset, treasury, clock, deployer, funding=1_000_000)
        weirdo1 = migrants[0]
        old_asset.approve(weirdo1, ledger.address, APPROVAL)

        with pytest.raises(InsufficientFunding) as exc_info:
            ledger.migrate(weirdo1)

        assert exc_info.value.available == 1_000_000
        assert exc_info.value.required == 20_000_000
        assert old_asset.balance_of(weirdo1) == 20_000
        assert old_asset.allowance(weirdo1, ledger.address) == APPROVAL
        assert ledger.total_migrated == 0
        assert ledger.migrant_count == 0

    def test_exactly_funded_ledger_succeeds(self, old_asset, new_asset, treasury, clock, deployer, migrants):
        ledger = _make_ledger(old_asset, new_asset, treasury, clock, deployer, funding=20_000_000)
        old_asset.approve(migrants[0], ledger.address, APPROVAL)
        ledger.migrate(migrants[0])
        assert new_asset.balance_of(ledger.address) == 0

    def test_failed_payout_returns_source(self, old_asset, treasury, clock, deployer, migrants):
        flaky = FlakyAsset(1_000_000_000, deployer, symbol="NEW")
        ledger = _make_ledger(old_asset, flaky, treasury, clock, deployer)
        weirdo1 = migrants[0]
        flaky.rejected.add(weirdo1)
        old_asset.approve(weirdo1, ledger.address, APPROVAL)

        with pytest.raises(AssetTransferError, match="rejected"):
            ledger.migrate(weirdo1)

        assert old_asset.balance_of(weirdo1) == 20_000
        assert old_asset.balance_of(ledger.address) == 0
        assert old_asset.allowance(weirdo1, ledger.address) == APPROVAL
        assert ledger.total_migrated == 0
        assert ledger.migrant_count == 0
        assert ledger.receipts == []

    def test_failed_tax_payout_reverts_everything(self, old_asset, treasury, clock, deployer, migrants):
        """With a router, a rejected tax payout also takes back the migrant's credit."""
        flaky = FlakyAsset(1_000_000_000, deployer, symbol="NEW")
        ledger = _make_ledger(
            old_asset, flaky, treasury, clock, deployer, swap_router=derive_address("router"),
        )
        flaky.rejected.add(treasury)
        weirdo1 = migrants[0]
        old_asset.approve(weirdo1, ledger.address, 20_000)

        with pytest.raises(AssetTransferError, match=treasury):
            ledger.migrate(weirdo1)

        assert flaky.balance_of(treasury) == 0
        assert flaky.balance_of(weirdo1) == 0
        assert flaky.balance_of(ledger.address) == flaky.total_supply()
        assert old_asset.balance_of(weirdo1) == 20_000
        assert old_asset.balance_of(ledger.address) == 0
        assert old_asset.allowance(weirdo1, ledger.address) == 20_000
        assert ledger.total_migrated == 0
        assert ledger.migrant_count == 0

    def test_failed_compensation_keeps_original_error(
        self, old_asset, treasury, clock, deployer, migrants
    ):
        """A compensation step that fails is logged; the payout error still surfaces."""
        flaky = FlakyAsset(1_000_000_000, deployer, symbol="NEW")
        ledger = _make_ledger(
            old_asset, flaky, treasury, clock, deployer, swap_router=derive_address("router"),
        )
        flaky.rejected.update({treasury, ledger.address})
        weirdo1 = migrants[0]
        old_asset.approve(weirdo1, ledger.address, APPROVAL)

        with pytest.raises(AssetTransferError, match=treasury):
            ledger.migrate(weirdo1)

        assert old_asset.balance_of(weirdo1) == 20_000
        assert old_asset.allowance(weirdo1, ledger.address) == APPROVAL
        assert ledger.total_migrated == 0


# =============================================================================
# INVARIANTS, EVENTS AND CONCURRENCY
# =============================================================================

class TestInvariants:
    """Tests for state machine invariants and snapshots."""

    def test_transition_history(self, ledger, old_asset, treasury, migrants):
        _migrate_all(ledger, old_asset, migrants)
        ledger.end_migration(treasury)

        path = [(t.from_state, t.to_state) for t in ledger.transitions]
        assert path == [
            (LedgerState.OPEN_PRE_CAP, LedgerState.OPEN_POST_CAP),
            (LedgerState.OPEN_POST_CAP, LedgerState.CLOSED),
        ]

    def test_closed_ledger_cannot_reopen(self, ledger, treasury, clock):
        clock.advance(days=30)
        ledger.end_migration(treasury)
        with pytest.raises(InvariantViolation):
            ledger._transition(LedgerState.OPEN_PRE_CAP, clock.now(), "reopen", treasury)

    def test_receipts_are_sequenced(self, ledger, old_asset, migrants):
        _migrate_all(ledger, old_asset, migrants[:3])
        assert [r.sequence for r in ledger.receipts] == [1, 2, 3]
        assert [r.amount for r in ledger.receipts] == [20_000, 50_000, 25_000]

    def test_to_dict_snapshot(self, ledger, old_asset, migrants):
        _migrate_all(ledger, old_asset, migrants)
        snapshot = ledger.to_dict()

        assert snapshot["state"] == "open_post_cap"
        assert snapshot["cap_reached"] is True
        assert snapshot["total_migrated"] == 315_069
        assert snapshot["migrant_count"] == 6
        assert snapshot["migrate_cap"] == 200_000
        assert snapshot["transitions"][0]["to_state"] == "open_post_cap"


class TestEvents:
    """Tests for domain events published by the ledger."""

    def test_events_published(self, old_asset, new_asset, treasury, clock, deployer, migrants):
        bus = EventBus()
        seen = []
        bus.subscribe()(seen.append)
        ledger = _make_ledger(old_asset, new_asset, treasury, clock, deployer, event_bus=bus)

        _migrate_all(ledger, old_asset, migrants)
        clock.advance(hours=42)
        ledger.migrate(migrants[0])

        kinds = [type(e) for e in seen]
        assert kinds == [TokensMigrated] * 6 + [MigrateCapReached, MigrationEnded]
        assert seen[0].amount == 20_000
        assert seen[0].credit == 20_000_000
        assert seen[6].new_time_cap == START + 42 * SECONDS_PER_HOUR
        assert seen[7].reason == "time_cap_elapsed"

    def test_failing_handler_does_not_fail_migration(
        self, old_asset, new_asset, treasury, clock, deployer, migrants
    ):
        bus = EventBus()

        @bus.subscribe(TokensMigrated)
        def broken(event):
            raise RuntimeError("boom")

        ledger = _make_ledger(old_asset, new_asset, treasury, clock, deployer, event_bus=bus)
        old_asset.approve(migrants[0], ledger.address, APPROVAL)

        assert ledger.migrate(migrants[0]) is not None
        assert bus.metrics["error_count"] == 1


class TestConcurrency:
    """Concurrent migrations are serialized."""

    def test_parallel_migrations_conserve_totals(
        self, old_asset, new_asset, treasury, clock, deployer
    ):
        ledger = _make_ledger(
            old_asset, new_asset, treasury, clock, deployer, params={"cap_percentage": 100},
        )
        holders = [derive_address(f"holder{i}") for i in range(20)]
        for holder in holders:
            old_asset.transfer(deployer, holder, 1_000)
            old_asset.approve(holder, ledger.address, APPROVAL)

        threads = [threading.Thread(target=ledger.migrate, args=(h,)) for h in holders]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.total_migrated == 20_000
        assert ledger.migrant_count == 20
        assert old_asset.balance_of(ledger.address) == 20_000
        assert all(new_asset.balance_of(h) == 1_000_000 for h in holders)
