import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport

import sys
from pathlib import Path

# Add src to sys.path
sys.path.append(str(Path(__file__).parent.parent / "src"))

import pytest_asyncio


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """
    Fixture for FastAPI test client.
    We import app inside to avoid early initialization issues.
    The lifespan does not run under ASGITransport, so nothing touches the network.
    """
    from main import app
    from ratelimit import limiter

    limiter.reset()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def mock_config(mocker):
    """Fixture to mock the config object."""
    from config import config
    mocker.patch.object(config, "load_from_yaml", return_value=None)
    return config


@pytest.fixture
def fake_ledger():
    from fakes import FakeLedgerClient
    return FakeLedgerClient()


@pytest.fixture
def facilitator(mocker, fake_ledger):
    """Replace the app's facilitator with one wired to the fake ledger."""
    from facilitator import X402Facilitator
    from fakes import NETWORK, make_mechanism

    instance = X402Facilitator()
    instance.register([NETWORK], make_mechanism(fake_ledger, instance.store))
    mocker.patch("main.x402_facilitator", instance)
    return instance
