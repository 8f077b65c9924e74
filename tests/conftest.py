import os
import pathlib
import sys

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import custody`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from custody.config import RegistryConfig  # noqa: E402
from custody.registry import RegistryService  # noqa: E402

ADMIN = "0xadmin"
FACTORY = "0xfactory"
SUPPLIER = "0xsupplier"
DISTRIBUTOR = "0xdistributor"
RETAILER = "0xretailer"
OUTSIDER = "0xoutsider"


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow concurrency stress tests (skipped unless CUSTODY_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('CUSTODY_RUN_SLOW')
    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set CUSTODY_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _clean_custody_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("CUSTODY_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def registry() -> RegistryService:
    return RegistryService(admin=ADMIN, config=RegistryConfig())


@pytest.fixture
def supply_chain(registry: RegistryService) -> RegistryService:
    """Registry with one participant per supply-chain role."""
    registry.authorize_participant(ADMIN, FACTORY, "manufacturer")
    registry.authorize_participant(ADMIN, SUPPLIER, "supplier")
    registry.authorize_participant(ADMIN, DISTRIBUTOR, "distributor")
    registry.authorize_participant(ADMIN, RETAILER, "retailer")
    return registry


@pytest.fixture
def shirt_id(supply_chain: RegistryService) -> int:
    return supply_chain.register_product(FACTORY, "Shirt", "Cotton", "India", 100, ["organic"])
