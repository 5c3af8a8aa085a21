"""Shared test fixtures."""

import os
import tempfile

# Keep config and log files out of the real home directory.
os.environ["DEVBIN_HOME"] = tempfile.mkdtemp(prefix="devbin-test-")

import pytest
from fastapi.testclient import TestClient

from devbin_server import create_app
from paste_store import PasteStore

DEVICE_A = "DEVICE01"
DEVICE_B = "DEVICE02"


@pytest.fixture
def store():
    return PasteStore(device_paste_limit=2)


@pytest.fixture
def app(store):
    return create_app({"max_paste_size": 64}, store=store)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def device_a():
    return {"Device-Code": DEVICE_A}


@pytest.fixture
def device_b():
    return {"Device-Code": DEVICE_B}
