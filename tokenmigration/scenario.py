"""
Migration Scenario Simulation

A scenario is a YAML document describing two in-memory assets, the holders of
the source asset, the ledger's creation parameters and an ordered list of
steps (``approve``, ``migrate``, ``end_migration``, ``advance``). The runner
deploys everything on a ``ManualClock``, executes the steps in order and
reports each step's outcome together with the final ledger state.

Participants are named by label (``alice``, ``treasury``) or given as raw
addresses. Labels are turned into addresses with ``derive_address``; the
``deployer`` label owns both initial supplies and ``treasury`` is the ledger's
treasury.

Example:
    name: cap-crossing
    assets:
      source: {symbol: OLD, supply: 1000000}
      destination: {symbol: NEW, supply: 1000000000}
    holders:
      alice: 250000
    steps:
      - {action: approve, actor: alice, amount: 250000}
      - {action: migrate, actor: alice}
      - {action: end_migration, actor: treasury}

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from jsonschema import Draft202012Validator

from tokenmigration.assets import InMemoryAssetLedger
from tokenmigration.clock import ManualClock
from tokenmigration.config import MigrationConfig, get_config
from tokenmigration.errors import MigrationError
from tokenmigration.events import Event, EventBus, EventHandlerError
from tokenmigration.hardening import ValidationErrors, derive_address, normalize_address
from tokenmigration.ledger import MigrationLedger
from tokenmigration.observability import (
    Component,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)

logger = get_logger("scenario", Component.SCENARIO)

SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
SCENARIO_SCHEMA_PATH = SCHEMA_DIR / "scenario.schema.json"

DEFAULT_START_TIME = 1_700_000_000
DEPLOYER = "deployer"
TREASURY = "treasury"


class ScenarioError(Exception):
    """A scenario could not be loaded, validated or deployed."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


def load_yaml(path: Union[str, Path]) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(Path(path).read_text(encoding="utf-8"))


def load_json(path: Union[str, Path]) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(Path(path).read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def scenario_validator() -> Draft202012Validator:
    """Validator for scenario documents, built once."""
    return Draft202012Validator(load_json(SCENARIO_SCHEMA_PATH))


def validate_scenario(data: Any) -> List[str]:
    """Validate a scenario document.

    Returns:
        List of validation error messages (empty if valid)
    """
    return [
        f"{error.json_path}: {error.message}"
        for error in scenario_validator().iter_errors(data)
    ]


def load_scenario(path: Union[str, Path]) -> Dict[str, Any]:
    """Read and validate a scenario file."""
    path = Path(path)
    try:
        data = load_yaml(path)
    except OSError as e:
        raise ScenarioError(f"Cannot read scenario {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ScenarioError(f"Invalid YAML in {path}: {e}") from e

    errors = validate_scenario(data)
    if errors:
        raise ScenarioError(f"Invalid scenario {path}", errors)
    return data


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class StepResult:
    """Outcome of one scenario step."""
    index: int
    action: str
    actor: Optional[str]
    timestamp: int
    passed: bool
    error: Optional[str] = None
    expected_error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScenarioReport:
    """Everything a scenario run produced."""
    name: str
    steps: List[StepResult]
    ledger: Dict[str, Any]
    balances: Dict[str, Dict[str, int]]
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(step.passed for step in self.steps)

    @property
    def failed_steps(self) -> List[StepResult]:
        return [step for step in self.steps if not step.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "steps": [step.to_dict() for step in self.steps],
            "ledger": self.ledger,
            "balances": self.balances,
            "events": self.events,
        }


def _error_code(exc: Exception) -> str:
    return getattr(exc, "code", None) or "validation_failed"


# =============================================================================
# RUNNER
# =============================================================================

class ScenarioRunner:
    """
    Deploys a scenario's assets and ledger, then plays its steps.

    A step that raises is recorded, not propagated. It passes when the error
    matches ``expect_error`` (an error code such as ``migration_closed`` or
    an exception class name such as ``MigrationClosed``) and fails otherwise.
    """

    def __init__(self, scenario: Dict[str, Any], config: Optional[MigrationConfig] = None):
        errors = validate_scenario(scenario)
        if errors:
            raise ScenarioError(f"Invalid scenario {scenario.get('name', '')!r}", errors)

        self.scenario = scenario
        self.name: str = scenario["name"]
        self.clock = ManualClock(scenario.get("start_time", DEFAULT_START_TIME))
        self.event_bus = EventBus(on_error=self._on_handler_error)
        self._events: List[Event] = []
        self.event_bus.subscribe()(self._events.append)
        self._labels: Dict[str, str] = {}
        self._has_run = False

        try:
            self._deploy(config or get_config())
        except (MigrationError, ValidationErrors) as e:
            raise ScenarioError(f"Cannot deploy scenario {self.name!r}: {e}") from e

    def address_of(self, participant: str) -> str:
        """Resolve a participant label or raw address to an address."""
        if participant.startswith("0x"):
            return normalize_address(participant, "participant")
        if participant not in self._labels:
            self._labels[participant] = derive_address(f"participant:{participant}")
        return self._labels[participant]

    def _deploy(self, config: MigrationConfig) -> None:
        assets = self.scenario["assets"]
        params = self.scenario.get("ledger", {})
        defaults = config.ledger
        deployer = self.address_of(DEPLOYER)

        self.source = InMemoryAssetLedger(
            assets["source"]["supply"], deployer, symbol=assets["source"].get("symbol", "OLD")
        )
        self.destination = InMemoryAssetLedger(
            assets["destination"]["supply"], deployer, symbol=assets["destination"].get("symbol", "NEW")
        )
        for label, amount in self.scenario["holders"].items():
            self.source.transfer(deployer, self.address_of(label), amount)

        swap_router = params.get("swap_router")
        self.ledger = MigrationLedger(
            self.source,
            self.destination,
            params.get("inflation_factor", defaults.inflation_factor.get()),
            params.get("tax_rate", defaults.tax_rate.get()),
            params.get("window_days", defaults.window_days.get()),
            params.get("cap_percentage", defaults.cap_percentage.get()),
            self.address_of(TREASURY),
            self.address_of(swap_router) if swap_router else None,
            grace_hours=params.get("grace_hours", defaults.grace_hours.get()),
            clock=self.clock,
            event_bus=self.event_bus,
        )
        funding = params.get("funding", self.destination.total_supply())
        self.destination.transfer(deployer, self.ledger.address, funding)

        logger.info(
            "Scenario deployed",
            scenario=self.name,
            ledger=self.ledger.address,
            holders=len(self.scenario["holders"]),
            funding=funding,
        )

    def run(self) -> ScenarioReport:
        """Play every step once and build the report."""
        if self._has_run:
            raise ScenarioError(f"Scenario {self.name!r} has already run")
        self._has_run = True
        set_correlation_id(generate_correlation_id())

        results = [
            self._run_step(index, step)
            for index, step in enumerate(self.scenario["steps"], start=1)
        ]
        report = ScenarioReport(
            name=self.name,
            steps=results,
            ledger=self.ledger.to_dict(),
            balances=self.balances(),
            events=[event.to_dict() for event in self._events],
        )
        logger.info(
            "Scenario finished",
            scenario=self.name,
            passed=report.passed,
            steps=len(results),
            failed=len(report.failed_steps),
        )
        return report

    def balances(self) -> Dict[str, Dict[str, int]]:
        """Source and destination balances of every named participant and the ledger."""
        holdings = {
            label: {
                "source": self.source.balance_of(address),
                "destination": self.destination.balance_of(address),
            }
            for label, address in self._labels.items()
        }
        holdings["ledger"] = {
            "source": self.source.balance_of(self.ledger.address),
            "destination": self.destination.balance_of(self.ledger.address),
        }
        return holdings

    def _run_step(self, index: int, step: Dict[str, Any]) -> StepResult:
        action = step["action"]
        actor = step.get("actor")
        expected_error = step.get("expect_error")
        details: Dict[str, Any] = {}
        error: Optional[Exception] = None

        try:
            details = getattr(self, f"_step_{action}")(step)
        except (MigrationError, ValidationErrors) as e:
            error = e

        if expected_error:
            passed = error is not None and expected_error in (_error_code(error), type(error).__name__)
        else:
            passed = error is None
        if passed and "expect_closed" in step:
            passed = (not self.ledger.is_open) == step["expect_closed"]

        result = StepResult(
            index=index,
            action=action,
            actor=actor,
            timestamp=self.clock.now(),
            passed=passed,
            error=_error_code(error) if error is not None else None,
            expected_error=expected_error,
            details=details,
        )
        if passed:
            logger.debug("Scenario step passed", scenario=self.name, step=index, action=action)
        else:
            logger.warning(
                "Scenario step failed",
                error_code=result.error or "unexpected_outcome",
                scenario=self.name,
                step=index,
                action=action,
                expected_error=expected_error,
                reason=str(error) if error is not None else "",
            )
        return result

    def _step_approve(self, step: Dict[str, Any]) -> Dict[str, Any]:
        self.source.approve(self.address_of(step["actor"]), self.ledger.address, step["amount"])
        return {"amount": step["amount"]}

    def _step_migrate(self, step: Dict[str, Any]) -> Dict[str, Any]:
        receipt = self.ledger.migrate(self.address_of(step["actor"]))
        if receipt is None:
            return {"closed": True, "amount": 0}
        return receipt.to_dict()

    def _step_end_migration(self, step: Dict[str, Any]) -> Dict[str, Any]:
        self.ledger.end_migration(self.address_of(step["actor"]))
        return {"state": self.ledger.state.value}

    def _step_advance(self, step: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock.advance(
            seconds=step.get("seconds", 0),
            hours=step.get("hours", 0),
            days=step.get("days", 0),
        )
        return {"now": now}

    def _on_handler_error(self, error: EventHandlerError) -> None:
        logger.warning(
            "Event handler failed",
            error_code="event_handler_failed",
            scenario=self.name,
            event_type=error.event.event_type,
            reason=str(error.cause),
        )


def run_scenario(
    path: Union[str, Path],
    config: Optional[MigrationConfig] = None,
) -> ScenarioReport:
    """Load, deploy and run a scenario file."""
    return ScenarioRunner(load_scenario(path), config=config).run()
