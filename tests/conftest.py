from __future__ import annotations

from types import SimpleNamespace

import pytest

from edenflow.config import load_config
from edenflow.db import connect
from edenflow.models import LlmResponse
from edenflow.storage import (
    assign_account_role,
    create_account,
    create_organization,
    grant_global_role,
    upsert_user,
)
from edenflow.worker import WorkerContext


def llm_response(text: str, stop_reason: str = "stop") -> LlmResponse:
    return LlmResponse(
        text=text,
        tokens_used_input=12,
        tokens_used_output=len(text.split()),
        stop_reason=stop_reason,
        is_truncated=stop_reason == "length",
    )


class FakeGateway:
    """Scripted gateway: each call pops the next response.

    A response may be a string, an ``LlmResponse``, an exception to raise, or
    a callable taking the prompt and returning one of those.
    """

    def __init__(self, responses=None, default: str = "ok") -> None:
        self.responses = list(responses or [])
        self.default = default
        self.calls: list[dict] = []

    def generate(self, prompt, system_message=None, max_output_tokens=None):
        self.calls.append(
            {"prompt": prompt, "system_message": system_message, "max_output_tokens": max_output_tokens}
        )
        item = self.responses.pop(0) if self.responses else self.default
        if callable(item) and not isinstance(item, type):
            item = item(prompt)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, LlmResponse):
            return item
        return llm_response(str(item))


@pytest.fixture
def config(tmp_path):
    return load_config(environ={"DB_PATH": str(tmp_path / "edenflow.sqlite3")})


@pytest.fixture
def conn(config):
    connection = connect(config)
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def tenants(conn):
    org_id = create_organization(conn, "Eden Media")
    account_a = create_account(conn, org_id, "Account A")
    account_b = create_account(conn, org_id, "Account B")
    users = {
        "owner": ("user-owner", "owner@example.com", "owner"),
        "admin": ("user-admin", "admin@example.com", "admin"),
        "editor": ("user-editor", "editor@example.com", "editor"),
        "viewer": ("user-viewer", "viewer@example.com", "viewer"),
    }
    for user_id, email, role in users.values():
        upsert_user(conn, user_id, email)
        assign_account_role(conn, account_a, user_id, role)
    upsert_user(conn, "user-b-owner", "b@example.com")
    assign_account_role(conn, account_b, "user-b-owner", "owner")
    upsert_user(conn, "user-root", "root@example.com")
    grant_global_role(conn, "user-root", "super_admin")
    return SimpleNamespace(
        org_id=org_id,
        a=account_a,
        b=account_b,
        owner="user-owner",
        admin="user-admin",
        editor="user-editor",
        viewer="user-viewer",
        b_owner="user-b-owner",
        root="user-root",
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def worker_context(config, gateway):
    return WorkerContext.from_config(config, gateway_factory=lambda conn, account_id: gateway)
