import time

import pytest
from fastapi.testclient import TestClient

from webshell.api import resources
from webshell.api.app import app
from webshell.api.auth import DevIdentityResolver, StaticTokenResolver, set_identity_resolver
from webshell.common import settings
from webshell.orchestrator.services import Services, set_services


@pytest.fixture
def services(runtime):
    services = Services.create(runtime=runtime)
    set_services(services)
    yield services
    set_services(None)
    resources._streamer = None


@pytest.fixture
def dev_auth():
    set_identity_resolver(DevIdentityResolver("alice"))
    yield
    set_identity_resolver(None)


@pytest.fixture
def token_auth(monkeypatch):
    """Auth enabled: "admin-token" is an admin, "alice-token" and "bob-token" are not."""
    monkeypatch.setattr(settings, "AUTH_ENABLED", True)
    monkeypatch.setattr(settings, "ADMIN_USERS", {"root"})
    set_identity_resolver(
        StaticTokenResolver({"admin-token": "root", "alice-token": "alice", "bob-token": "bob"})
    )
    yield
    set_identity_resolver(None)


@pytest.fixture
def client(services, dev_auth):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def secure_client(services, token_auth):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def wait_for():
    """Poll from the test thread while the app's event loop runs in its own thread."""

    def wait(predicate, timeout: float = 2.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            time.sleep(0.01)

    return wait
