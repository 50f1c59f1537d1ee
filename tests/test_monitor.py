from dataclasses import replace
from datetime import datetime, timedelta

from gatewayd.exceptions import GatewayLaunchFailed
from gatewayd.models import LifecycleEvent, record_event
from gatewayd.monitor import GatewayMonitor


class FakeGateway:
    def __init__(self, process=None, healthy=True, launch_error=False):
        self.process = process
        self.healthy = healthy
        self.launch_error = launch_error
        self.restart_in_progress = False
        self.launches = 0

    def find_existing(self):
        return self.process

    def is_healthy(self, process, timeout=None):
        return self.healthy

    def ensure_running(self):
        self.launches += 1
        if self.launch_error:
            raise GatewayLaunchFailed("boom")
        return object()


def test_healthy_gateway_resets_crash_counter(settings, db):
    monitor = GatewayMonitor(FakeGateway(process=object()), settings)
    monitor.expect_running = True
    monitor.crash_restarts = 2
    monitor.check()
    assert monitor.crash_restarts == 0


def test_crashed_gateway_is_relaunched_up_to_limit(settings, db):
    gateway = FakeGateway(launch_error=True)
    monitor = GatewayMonitor(gateway, replace(settings, max_restart_attempts=2))
    monitor.expect_running = True

    for _ in range(4):
        monitor.check()

    assert gateway.launches == 2
    assert LifecycleEvent.select().where(LifecycleEvent.kind == "crash").count() == 2


def test_no_relaunch_before_boot_finished(settings, db):
    gateway = FakeGateway()
    GatewayMonitor(gateway, settings).check()
    assert gateway.launches == 0


def test_no_relaunch_during_restart(settings, db):
    gateway = FakeGateway()
    gateway.restart_in_progress = True
    monitor = GatewayMonitor(gateway, settings)
    monitor.expect_running = True
    monitor.check()
    assert gateway.launches == 0


def test_old_events_are_pruned(settings, db):
    old = record_event("launch", "old")
    LifecycleEvent.update(timestamp=datetime.now() - timedelta(days=30)).where(
        LifecycleEvent.id == old.id
    ).execute()
    record_event("launch", "new")

    GatewayMonitor(FakeGateway(process=object()), replace(settings, log_retention_days=7)).check()

    assert [e.message for e in LifecycleEvent.select()] == ["new"]
