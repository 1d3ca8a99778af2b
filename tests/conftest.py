"""
Shared pytest fixtures for ABAP ADT MCP tests.

Provides a connection config pointing at a fake SAP host, a recording sleep
for retry timing assertions, and a ready-to-use ADT client.
"""

from typing import List

import pytest
import pytest_asyncio

from abap_adt_mcp.api_clients import AdtClient
from abap_adt_mcp.config import ConnectionConfig, RetryPolicy

SAP_HOST = "sap.example.com"
SAP_PORT = 44300
BASE_PATH = "/sap/bc/adt"


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def connection() -> ConnectionConfig:
    return ConnectionConfig(
        host=SAP_HOST,
        port=SAP_PORT,
        client="100",
        username="DEVELOPER",
        password="secret",
    )


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def adt_client(connection, recording_sleep):
    client = AdtClient(
        connection,
        retry=RetryPolicy(max_attempts=3, base_delay=0.5),
        sleep=recording_sleep,
    )
    yield client
    await client.close()
