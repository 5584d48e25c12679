import pytest

from webshell.common.errors import RuntimeUnavailable
from webshell.orchestrator import services as services_module
from webshell.orchestrator.services import Services, get_services, set_services


@pytest.mark.asyncio
async def test_start_and_stop(runtime):
    services = Services.create(runtime=runtime)
    runtime.add_foreign(1)

    await services.start()
    assert services.reaper.running
    assert services.reconciler.running
    assert services.monitor.running

    await services.registry.create_session("alice")
    await services.stop()

    assert not services.reaper.running
    assert not services.monitor.running
    assert len(services.registry) == 0
    # Orphans are only reported unless auto-destroy is on
    assert len(runtime.foreign) == 1


@pytest.mark.asyncio
async def test_start_survives_unavailable_runtime(runtime, caplog):
    async def broken_prepare():
        raise RuntimeUnavailable("prepare: connection refused")

    runtime.prepare = broken_prepare
    runtime.available = False
    services = Services.create(runtime=runtime)

    await services.start()
    try:
        assert "Runtime preparation failed" in caplog.text
        assert "Startup reconcile failed" in caplog.text
        assert services.reaper.running
    finally:
        await services.stop()


def test_components_share_registry(runtime):
    services = Services.create(runtime=runtime)
    assert services.reaper.registry is services.registry
    assert services.reconciler.registry is services.registry
    assert services.monitor.registry is services.registry
    assert services.monitor.connections is services.connections
    assert services.registry.limits is services.limits


def test_get_services_is_cached(runtime):
    set_services(Services.create(runtime=runtime))
    try:
        assert get_services() is services_module._services
        assert get_services().runtime is runtime
    finally:
        set_services(None)
