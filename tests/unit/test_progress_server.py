"""Unit tests for the progress endpoint."""

import json
from typing import Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from vault.operation import LogLevel, OperationModel, OperationStatus, OperationType
from vault.progress_server import ProgressServer


def _request(accesskey: str, query: Optional[dict] = None) -> MagicMock:
    request = MagicMock()
    request.match_info = {"accesskey": accesskey}
    request.query = query or {}
    return request


@pytest_asyncio.fixture
async def operation(operation_store):
    model = OperationModel(
        type=OperationType.RESTORE,
        status=OperationStatus.INPROGRESS,
        backupkey="key1",
        accesskey="a" * 32,
    )
    await operation_store.save(model)
    await operation_store.add_log(model, "Restore started")
    await operation_store.add_log(model, "Table config restored", LogLevel.WARNING)
    return model


@pytest.fixture
def server(operation_store) -> ProgressServer:
    return ProgressServer(operation_store, port=0)


@pytest.mark.asyncio
async def test_progress(server, operation) -> None:
    """Test status and log are returned for a known access key."""
    response = await server._handle_progress(_request("a" * 32))
    data = json.loads(response.text)

    assert response.status == 200
    assert data["status"] == "inprogress"
    assert data["type"] == "restore"
    assert [entry["message"] for entry in data["logs"]] == ["Restore started", "Table config restored"]
    assert "[warning] Table config restored" in data["formatted"]


@pytest.mark.asyncio
async def test_progress_since(server, operation) -> None:
    """Test only newer log entries are returned."""
    data = json.loads((await server._handle_progress(_request("a" * 32, {"since": "1"}))).text)
    assert [entry["message"] for entry in data["logs"]] == ["Table config restored"]

    data = json.loads((await server._handle_progress(_request("a" * 32, {"since": "abc"}))).text)
    assert len(data["logs"]) == 2


@pytest.mark.asyncio
async def test_unknown_access_key(server) -> None:
    response = await server._handle_progress(_request("unknown"))
    assert response.status == 404


def test_build_app(server) -> None:
    """Test the progress route is registered."""
    app = server.build_app()
    routes = [route.resource.canonical for route in app.router.routes()]
    assert "/progress/{accesskey}" in routes


@pytest.mark.asyncio
async def test_stop_without_start(server) -> None:
    await server.stop()
