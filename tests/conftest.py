import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import tokenmigration`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from tokenmigration.assets import InMemoryAssetLedger  # noqa: E402
from tokenmigration.clock import ManualClock  # noqa: E402
from tokenmigration.config import ConfigManager  # noqa: E402
from tokenmigration.hardening import derive_address  # noqa: E402
from tokenmigration.ledger import MigrationLedger  # noqa: E402


START_TIME = 1_700_000_000
OLD_SUPPLY = 1_000_000
NEW_SUPPLY = 1_000_000_000
MIGRANT_BALANCES = (20_000, 50_000, 25_000, 69, 100_000, 120_000)


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless TOKENMIGRATION_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('TOKENMIGRATION_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set TOKENMIGRATION_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def fresh_config():
    """Every test starts from default configuration."""
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START_TIME)


@pytest.fixture
def deployer() -> str:
    return derive_address("deployer")


@pytest.fixture
def treasury() -> str:
    return derive_address("treasury")


@pytest.fixture
def migrants(deployer, old_asset):
    """Six holders funded with the reference balances, in order."""
    addresses = []
    for i, balance in enumerate(MIGRANT_BALANCES, start=1):
        address = derive_address(f"weirdo{i}")
        old_asset.transfer(deployer, address, balance)
        addresses.append(address)
    return addresses


@pytest.fixture
def old_asset(deployer) -> InMemoryAssetLedger:
    return InMemoryAssetLedger(OLD_SUPPLY, deployer, symbol="OLD")


@pytest.fixture
def new_asset(deployer) -> InMemoryAssetLedger:
    return InMemoryAssetLedger(NEW_SUPPLY, deployer, symbol="NEW")


@pytest.fixture
def ledger(old_asset, new_asset, treasury, deployer, clock) -> MigrationLedger:
    """A ledger with the reference parameters, fully funded with the new asset."""
    ledger = MigrationLedger(
        old_asset, new_asset, 1000, 42, 30, 20, treasury, None, clock=clock,
    )
    new_asset.transfer(deployer, ledger.address, NEW_SUPPLY)
    return ledger

