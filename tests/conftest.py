"""
Shared fixtures.

The gateway is never contacted: tests get a Gateway whose AsyncOpenAI client
talks to a GatewayStub (see gateway_stub.py) through httpx.MockTransport.
"""
import os
import tempfile

# Must be set before cloud_app modules read the environment
os.environ.setdefault("DB_PATH", os.path.join(tempfile.mkdtemp(prefix="cloud-tests-"), "chat.db"))
os.environ.setdefault("AI_GATEWAY_API_KEY", "test-key")

import httpx
import pytest

from cloud_app import database
from cloud_app.clients import GatewayConfig, build_gateway
from gateway_stub import GATEWAY_URL, GatewayStub


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def stub():
    return GatewayStub()


@pytest.fixture
def gateway(stub):
    config = GatewayConfig(base_url=GATEWAY_URL, api_key="test-key")
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub.handler))
    return build_gateway(config, http_client=http_client)


@pytest.fixture
def fresh_db(tmp_path, monkeypatch):
    """Point the store at an empty database for one test."""
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "chat.db"))
    database.init_db()
    return database
