from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient

from bucketfront.common.config import get_settings

os.environ["STORAGE_BACKEND"] = "s3"
os.environ.setdefault("STORAGE_BUCKET", "test-bucket")
os.environ["STORAGE_KEY_PREFIX"] = "test-files/"
os.environ["ENABLE_METRICS"] = "true"
os.environ["TRACE_HTTP"] = "false"
get_settings.cache_clear()  # type: ignore[attr-defined]

from bucketfront.app.services.transfer_client import (  # noqa: E402
    ObjectTransferClient,
    TransferConfig,
)
from bucketfront.main import create_app  # noqa: E402
from tests.services.mock_storage import (  # noqa: E402
    BUCKET,
    PREFIX,
    FakeClock,
    MockObjectStore,
)


@pytest.fixture(autouse=True)
def reset_settings_cache():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture()
def mock_store() -> MockObjectStore:
    return MockObjectStore()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def transfer_config() -> TransferConfig:
    return TransferConfig(
        bucket_name=BUCKET,
        key_prefix=PREFIX,
        operation_timeout=50.0,
        list_page_size=2,
        chunk_size=4,
    )


@pytest.fixture()
def transfer_client(mock_store, transfer_config, clock):
    client = ObjectTransferClient(mock_store, transfer_config, clock=clock)
    yield client
    client.close(wait=True)


@pytest.fixture()
def api_client(transfer_client) -> TestClient:
    app = create_app(transfer_client=transfer_client)
    return TestClient(app)
