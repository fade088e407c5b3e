"""
Token Migration Ledger

One-way, time- and volume-bounded migration from an old fungible asset to a
new one. Holders hand their entire old balance to the ledger and receive a
fixed multiple of it in the new asset, paid out of a balance pre-funded into
the ledger.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          TOKEN MIGRATION                                 │
    │                                                                          │
    │  SURFACE                                                                 │
    │    cli.py           simulate / config commands                           │
    │    scenario.py      YAML scenarios validated against a JSON Schema       │
    │                                                                          │
    │  CORE                                                                    │
    │    ledger.py        Migration state machine, caps, treasury close        │
    │    assets.py        Fungible asset interface and in-memory asset         │
    │    clock.py         System and manual time sources                       │
    │                                                                          │
    │  AMBIENT                                                                 │
    │    hardening.py     Validation and state machine invariants              │
    │    errors.py        Ledger error hierarchy                               │
    │    events.py        Domain events and in-process bus                     │
    │    observability.py Structured logging and audit trail                   │
    │    config.py        YAML and environment configuration                   │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Migrate Cap: Upper bound on cumulative migrated source volume, a whole
    percentage of the source supply at ledger creation. Reaching it starts a
    short grace period instead of closing the ledger immediately.

    Time Cap: Deadline after which the ledger closes. It starts at creation
    plus the migration window and is replaced, once, by the end of the grace
    period when the migrate cap is reached.

    Lazy Close: Nothing closes the ledger on a timer. The first migration
    attempt observed at or after the time cap closes it and moves nothing.

    Treasury: The only principal allowed to close the ledger early, and only
    once the migrate cap has been reached or the time cap has elapsed.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import ledger modules on first access."""

    if name in ("MigrationLedger", "LedgerState", "CloseReason",
                "MigrationReceipt", "StateTransition"):
        from tokenmigration import ledger
        return getattr(ledger, name)

    if name in ("MigrationError", "MigrationClosed", "Unauthorized",
                "MilestonesNotReached", "InsufficientFunding",
                "InsufficientAllowanceOrBalance", "AssetTransferError"):
        from tokenmigration import errors
        return getattr(errors, name)

    if name in ("AssetLedger", "InMemoryAssetLedger"):
        from tokenmigration import assets
        return getattr(assets, name)

    if name in ("Clock", "SystemClock", "ManualClock"):
        from tokenmigration import clock
        return getattr(clock, name)

    if name in ("NULL_ADDRESS", "ValidationError", "ValidationErrors",
                "InvariantViolation", "derive_address"):
        from tokenmigration import hardening
        return getattr(hardening, name)

    if name in ("EventBus", "TokensMigrated", "MigrateCapReached", "MigrationEnded"):
        from tokenmigration import events
        return getattr(events, name)

    if name in ("ConfigManager", "ConfigError", "get_config", "get_config_manager"):
        from tokenmigration import config
        return getattr(config, name)

    if name in ("ScenarioRunner", "ScenarioError", "run_scenario", "load_scenario"):
        from tokenmigration import scenario
        return getattr(scenario, name)

    raise AttributeError(f"module 'tokenmigration' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Ledger
    "MigrationLedger",
    "LedgerState",
    "CloseReason",
    "MigrationReceipt",
    "StateTransition",
    # Errors
    "MigrationError",
    "MigrationClosed",
    "Unauthorized",
    "MilestonesNotReached",
    "InsufficientFunding",
    "InsufficientAllowanceOrBalance",
    "AssetTransferError",
    # Assets and time
    "AssetLedger",
    "InMemoryAssetLedger",
    "Clock",
    "SystemClock",
    "ManualClock",
    # Validation
    "NULL_ADDRESS",
    "ValidationError",
    "ValidationErrors",
    "InvariantViolation",
    "derive_address",
    # Events
    "EventBus",
    "TokensMigrated",
    "MigrateCapReached",
    "MigrationEnded",
    # Configuration
    "ConfigManager",
    "ConfigError",
    "get_config",
    "get_config_manager",
    # Scenarios
    "ScenarioRunner",
    "ScenarioError",
    "run_scenario",
    "load_scenario",
]
