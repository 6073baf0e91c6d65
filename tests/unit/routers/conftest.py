"""Router test fixtures: a live app over a temp database with in-process native accounts."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from task_escrow_service.app import create_app
from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.lifespan import lifespan
from task_escrow_service.core.state import get_app_state, reset_app_state
from tests.helpers import Signer

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from httpx import Response

CUSTODY_ACCOUNT = "0x00000000000000000000000000000000c0571d7"
FAUCET_AMOUNT = 1_000
STARTING_BALANCE = 10_000


def write_config(tmp_path: Path, *, db_path: Path, max_body_size: int = 1048576) -> Path:
    config_content = f"""\
service:
  name: "task-escrow"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
database:
  path: "{db_path}"
request:
  max_body_size: {max_body_size}
ledger:
  custody_account: "{CUSTODY_ACCOUNT}"
  max_description_length: 200
bank:
  faucet_amount: {FAUCET_AMOUNT}
  genesis_balances: {{}}
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)
    return config_path


@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with a temp database."""
    config_path = write_config(tmp_path, db_path=tmp_path / "test.db")

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _funded_signer() -> Signer:
    signer = Signer()
    get_app_state().require_bank().credit(signer.address, STARTING_BALANCE)
    return signer


@pytest.fixture
def poster(_app: Any) -> Signer:
    """A funded poster identity."""
    return _funded_signer()


@pytest.fixture
def worker(_app: Any) -> Signer:
    """A funded worker identity."""
    return _funded_signer()


@pytest.fixture
def stranger(_app: Any) -> Signer:
    """A funded identity with no role on any task."""
    return _funded_signer()


# ---------------------------------------------------------------------------
# Task lifecycle helper functions
# ---------------------------------------------------------------------------
async def post_task(
    client: AsyncClient,
    poster: Signer,
    *,
    value: Any = 100,
    description: Any = "Write integration tests",
) -> Response:
    """Post a task via POST /tasks and return the response."""
    token = poster.sign("post_task", description=description, value=value)
    return await client.post("/tasks", json={"token": token})


async def task_action(
    client: AsyncClient,
    signer: Signer,
    task_id: int,
    action: str,
) -> Response:
    """Run one lifecycle action (accept, complete, confirm, cancel, withdraw)."""
    operation = {
        "accept": "accept_task",
        "complete": "complete_task",
        "confirm": "confirm_completion",
        "cancel": "cancel_task",
        "withdraw": "withdraw_from_task",
    }[action]
    token = signer.sign(operation, task_id=task_id)
    return await client.post(f"/tasks/{task_id}/{action}", json={"token": token})


async def setup_completed_task(
    client: AsyncClient, poster: Signer, worker: Signer, *, value: int = 100
) -> int:
    """Post a task and advance it to Completed. Returns the task id."""
    response = await post_task(client, poster, value=value)
    task_id = response.json()["task_id"]
    await task_action(client, worker, task_id, "accept")
    await task_action(client, worker, task_id, "complete")
    return task_id
