import json
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

from webshell.api.auth import (
    DevIdentityResolver,
    StaticTokenResolver,
    get_current_user,
    get_token,
    is_admin,
    require_admin,
)
from webshell.common import settings


def make_conn(headers=None, query=None, cookies=None):
    conn = MagicMock()
    conn.headers = headers or {}
    conn.query_params = query or {}
    conn.cookies = cookies or {}
    return conn


@pytest.mark.parametrize(
    "conn, expected",
    [
        (make_conn(headers={"Authorization": "Bearer abc"}), "abc"),
        (make_conn(query={"token": "from-query"}), "from-query"),
        (make_conn(cookies={"session_id": "from-cookie"}), "from-cookie"),
        (
            make_conn(headers={"Authorization": "Bearer abc"}, query={"token": "other"}),
            "abc",
        ),
        (make_conn(headers={"Authorization": "malformed"}), None),
        (make_conn(), None),
    ],
)
def test_get_token(conn, expected):
    assert get_token(conn) == expected


def test_dev_resolver_accepts_anything():
    resolver = DevIdentityResolver("dev")
    assert resolver.resolve(None) == "dev"
    assert resolver.resolve("whatever") == "dev"


def test_static_resolver():
    resolver = StaticTokenResolver({"t1": "alice", "t2": "bob"})
    assert resolver.resolve("t1") == "alice"
    assert resolver.resolve("t2") == "bob"
    assert resolver.resolve("t3") is None
    assert resolver.resolve("") is None
    assert resolver.resolve(None) is None


def test_static_resolver_from_settings(tmp_path):
    tokens_file = tmp_path / "tokens.json"
    tokens_file.write_text(json.dumps({"file-token": "carol"}))

    resolver = StaticTokenResolver.from_settings(
        tokens="t1:alice, t2:bob,broken", tokens_file=str(tokens_file)
    )

    assert resolver.tokens == {"t1": "alice", "t2": "bob", "file-token": "carol"}


def test_static_resolver_with_unreadable_file(tmp_path, caplog):
    resolver = StaticTokenResolver.from_settings(tokens="", tokens_file=str(tmp_path / "nope.json"))
    assert resolver.tokens == {}
    assert "Could not load auth tokens" in caplog.text


def test_get_current_user(token_auth):
    assert get_current_user(make_conn(query={"token": "alice-token"})) == "alice"
    with pytest.raises(HTTPException) as exc_info:
        get_current_user(make_conn(query={"token": "nope"}))
    assert exc_info.value.status_code == 401


def test_admin_checks(token_auth):
    assert is_admin("root")
    assert not is_admin("alice")
    assert require_admin("root") == "root"
    with pytest.raises(HTTPException) as exc_info:
        require_admin("alice")
    assert exc_info.value.status_code == 403


def test_everyone_is_admin_without_auth(monkeypatch):
    monkeypatch.setattr(settings, "AUTH_ENABLED", False)
    assert is_admin("anyone")
