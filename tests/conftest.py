import os
import pathlib
import sys
from typing import List

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import pangu`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

FIXTURES_DIR = pathlib.Path(__file__).resolve().parent / "fixtures"

ACCOUNT_ID = "acct-7f3e"
GROUP_ID = "guar-group-01"

# Fixed private scalars so addresses and keys are stable across runs.
ACCOUNT_SCALAR = 0xA11CE
ADDRESS_A_SCALAR = 0xA1
ADDRESS_B_SCALAR = 0xB2
RECIPIENT_SCALAR = 0xC3


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless PANGU_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    run_slow = _env_flag('PANGU_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set PANGU_RUN_SLOW=1 to enable'))


# =============================================================================
# SHARED FIXTURES
# =============================================================================

class FakeClock:
    """Manually advanced clock for lease and TTL tests."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def secret_bytes(scalar: int) -> bytes:
    return scalar.to_bytes(32, "big")


@pytest.fixture(autouse=True)
def _quiet_logging():
    """Keep log output off captured streams that pytest closes between tests."""
    from pangu.observability import configure_logging

    configure_logging("warning", "json", sys.__stderr__)
    yield
    configure_logging("warning", "json", sys.__stderr__)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config():
    from pangu.config import PanguConfig

    return PanguConfig()


@pytest.fixture
def keys():
    """Secrets, public keys and addresses for the account and two wallet addresses."""
    from pangu.signing import derive_address, public_key_from_secret

    out = {}
    for name, scalar in (
        ("account", ACCOUNT_SCALAR),
        ("a", ADDRESS_A_SCALAR),
        ("b", ADDRESS_B_SCALAR),
        ("recipient", RECIPIENT_SCALAR),
    ):
        secret = secret_bytes(scalar)
        public_key = public_key_from_secret(secret)
        out[name] = {
            "secret": secret,
            "public_key": public_key,
            "address": derive_address(public_key),
        }
    return out


def make_unit(address: str, txid: str, index_z: int, value: float, asset_type: int = 0):
    """Spendable unit carrying the source output it spends."""
    from pangu.records import TXOutput, TxPosition
    from pangu.wallet import SpendableUnit, unit_id

    return SpendableUnit(
        unit_id=unit_id(txid, index_z),
        value=value,
        asset_type=asset_type,
        source_txid=txid,
        position=TxPosition(blocknum=7, index_x=0, index_y=1, index_z=index_z),
        source_output=TXOutput(to_address=address, to_value=value, coin_type=asset_type),
    )


@pytest.fixture
def wallet(keys, config, clock):
    """Address A holds 70 and 30 of the primary asset; B holds 2 of asset type 1."""
    from pangu.wallet import Wallet

    w = Wallet(ACCOUNT_ID, config=config, clock=clock)
    a = keys["a"]["address"]
    b = keys["b"]["address"]
    w.add_address(a, keys["a"]["public_key"], asset_type=0, interest=5.0)
    w.add_address(b, keys["b"]["public_key"], asset_type=1)
    w.add_unit(a, make_unit(a, "aa" * 8, 0, 70.0))
    w.add_unit(a, make_unit(a, "bb" * 8, 1, 30.0))
    w.add_unit(b, make_unit(b, "cc" * 8, 0, 2.0, asset_type=1))
    return w
