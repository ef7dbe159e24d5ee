import os
import socket
import threading
import time

import pytest

from focusblock.core.controller import BlockingController
from focusblock.core.errors import AlreadyInProgress
from focusblock.core.models import BlockingState, BlockRuleSet
from focusblock.network.flow_filter import FilterState, FlowFilterService, NullFilterBackend
from focusblock.network.redirect_server import LocalRedirectServer
from focusblock.process.guard import ProcessGuard
from focusblock.process.launch_events import ProcessInfo
from conftest import ORIGINAL_HOSTS, FakeFilterBackend

GAME = "/usr/local/bin/game"


class GatedFilterBackend(FakeFilterBackend):
    """request_enable() blocks until the test opens the gate"""

    def __init__(self):
        super().__init__(FilterState.ACTIVE)
        self.gate = threading.Event()

    def request_enable(self, record):
        self.gate.wait(5)
        return super().request_enable(record)


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def make_controller(hosts, shared_state, redirect_server, launch_source, terminator):
    controllers = []

    def make(backend=None, filter_timeout=0.2, server=None, refresh_interval=3600):
        flow_filter = None
        if backend is not None:
            flow_filter = FlowFilterService(
                backend=backend, shared_state=shared_state, timeout=filter_timeout,
                poll_interval=0.02, consent_poll_interval=0.02,
            )
        controller = BlockingController(
            hosts=hosts,
            redirect_server=server if server is not None else redirect_server,
            process_guard=ProcessGuard(source=launch_source, terminator=terminator),
            flow_filter=flow_filter,
            shared_state=shared_state,
            restore_retry_delay=0,
            refresh_interval=refresh_interval,
        )
        controllers.append(controller)
        return controller

    yield make
    for controller in controllers:
        controller.shutdown(timeout=10)


class TestScenarios:
    def test_filter_unavailable_falls_back_to_hosts(self, make_controller, hosts_path, redirect_server,
                                                    shared_state):
        controller = make_controller(NullFilterBackend())
        status = controller.apply_rules(["reddit.com"]).result(timeout=5)

        assert status.state == BlockingState.DEGRADED
        assert "flow filter" in status.reason
        assert b"0.0.0.0 reddit.com\n" in hosts_path.read_bytes()
        assert redirect_server.is_running
        assert shared_state.read().domains == ["reddit.com"]
        assert controller.should_block("www.reddit.com")
        assert not controller.should_block("example.com")

        assert controller.disable().result(timeout=5) == []
        assert controller.status.state == BlockingState.INACTIVE
        assert hosts_path.read_bytes() == ORIGINAL_HOSTS
        assert not redirect_server.is_running
        assert not shared_state.read().enabled
        assert not controller.should_block("reddit.com")

    def test_late_consent_upgrades_to_active(self, make_controller):
        backend = FakeFilterBackend(FilterState.PENDING_CONSENT)
        controller = make_controller(backend, filter_timeout=0.1)
        status = controller.apply_rules(["reddit.com"]).result(timeout=5)
        assert status.state == BlockingState.DEGRADED

        backend.current_state = FilterState.ACTIVE
        assert _wait_for(lambda: controller.status.state == BlockingState.ACTIVE)
        assert controller.status.reason is None

    def test_blocked_apps_are_terminated(self, make_controller, launch_source, terminator):
        launch_source.running = [ProcessInfo(10, GAME), ProcessInfo(11, "/usr/bin/vim")]
        controller = make_controller(FakeFilterBackend(FilterState.ACTIVE))
        status = controller.apply(BlockRuleSet.create(apps=[GAME])).result(timeout=5)

        assert status.state == BlockingState.ACTIVE
        assert terminator.pids == [10]
        launch_source.launch(ProcessInfo(12, GAME))
        assert terminator.pids == [10, 12]

        controller.disable().result(timeout=5)
        launch_source.launch(ProcessInfo(13, GAME))
        assert terminator.pids == [10, 12]

    def test_everything_available_is_active(self, make_controller, hosts_path):
        controller = make_controller(FakeFilterBackend(FilterState.ACTIVE))
        status = controller.apply_rules(["reddit.com"], [GAME]).result(timeout=5)
        assert status.state == BlockingState.ACTIVE
        assert status.reason is None
        assert b"reddit.com" in hosts_path.read_bytes()

    def test_no_flow_filter_at_all(self, make_controller):
        controller = make_controller()
        status = controller.apply_rules(["reddit.com"]).result(timeout=5)
        assert status.state == BlockingState.DEGRADED


class TestTransitions:
    def test_listener_sees_every_transition(self, make_controller):
        controller = make_controller(FakeFilterBackend(FilterState.ACTIVE))
        seen = []
        controller.subscribe(lambda status: seen.append(status.state))
        controller.apply_rules(["reddit.com"]).result(timeout=5)
        controller.disable().result(timeout=5)
        assert seen == [
            BlockingState.ACTIVATING,
            BlockingState.ACTIVE,
            BlockingState.DISABLING,
            BlockingState.INACTIVE,
        ]

    def test_activating_is_set_before_apply_returns(self, make_controller):
        backend = GatedFilterBackend()
        controller = make_controller(backend, filter_timeout=5)
        future = controller.apply_rules(["reddit.com"])
        assert controller.status.state == BlockingState.ACTIVATING
        backend.gate.set()
        assert future.result(timeout=10).state == BlockingState.ACTIVE

    def test_second_apply_is_rejected(self, make_controller):
        backend = GatedFilterBackend()
        controller = make_controller(backend, filter_timeout=5)
        future = controller.apply_rules(["reddit.com"])
        with pytest.raises(AlreadyInProgress):
            controller.apply_rules(["youtube.com"])
        backend.gate.set()
        future.result(timeout=10)
        assert controller.rules.website_domains == frozenset({"reddit.com"})

    def test_disable_during_activation_runs_after_it(self, make_controller, hosts_path):
        backend = GatedFilterBackend()
        controller = make_controller(backend, filter_timeout=5)
        applied = controller.apply_rules(["reddit.com"])
        disabled = controller.disable()
        backend.gate.set()
        applied.result(timeout=10)
        assert disabled.result(timeout=10) == []
        assert controller.status.state == BlockingState.INACTIVE
        assert hosts_path.read_bytes() == ORIGINAL_HOSTS

    def test_reapply_updates_rules_and_keeps_original_backup(self, make_controller, hosts_path, hosts):
        controller = make_controller(FakeFilterBackend(FilterState.ACTIVE))
        controller.apply_rules(["reddit.com"]).result(timeout=5)
        controller.apply_rules(["youtube.com"]).result(timeout=5)

        content = hosts_path.read_bytes()
        assert b"youtube.com" in content and b"reddit.com" not in content
        assert hosts.read_backup().original_content == ORIGINAL_HOSTS
        assert controller.should_block("youtube.com")
        assert not controller.should_block("reddit.com")

        controller.disable().result(timeout=5)
        assert hosts_path.read_bytes() == ORIGINAL_HOSTS


class TestFailures:
    def test_permission_error_aborts_apply(self, make_controller, hosts_path, hosts, shared_state,
                                          redirect_server, monkeypatch):
        real_replace = os.replace

        def deny_hosts(src, dst):
            if str(dst) == str(hosts_path):
                raise PermissionError(13, "Operation not permitted", str(dst))
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", deny_hosts)
        controller = make_controller(NullFilterBackend())
        with pytest.raises(PermissionError):
            controller.apply_rules(["reddit.com"]).result(timeout=5)

        assert controller.status.state == BlockingState.ERROR
        assert hosts_path.read_bytes() == ORIGINAL_HOSTS
        assert not hosts.has_backup()
        assert not shared_state.read().enabled
        assert not redirect_server.is_running
        assert not controller.should_block("reddit.com")

        monkeypatch.setattr(os, "replace", real_replace)
        assert controller.apply_rules(["reddit.com"]).result(timeout=5).is_enforcing

    def test_redirect_server_failure_degrades(self, make_controller, hosts_path):
        busy = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        try:
            server = LocalRedirectServer(port=busy.getsockname()[1])
            controller = make_controller(FakeFilterBackend(FilterState.ACTIVE), server=server)
            status = controller.apply_rules(["reddit.com"]).result(timeout=5)
            assert status.state == BlockingState.DEGRADED
            assert "redirect server" in status.reason
            assert b"reddit.com" in hosts_path.read_bytes()

            # A filter that turns active later must not hide the server failure
            controller._on_filter_state(FilterState.ACTIVE)
            assert controller.status.state == BlockingState.DEGRADED
        finally:
            busy.close()

    def test_disable_without_apply_is_safe(self, make_controller, hosts_path):
        controller = make_controller(NullFilterBackend())
        assert controller.disable().result(timeout=5) == []
        assert controller.status.state == BlockingState.INACTIVE
        assert hosts_path.read_bytes() == ORIGINAL_HOSTS

    def test_restore_is_retried(self, make_controller, hosts, hosts_path, monkeypatch):
        controller = make_controller(NullFilterBackend())
        controller.apply_rules(["reddit.com"]).result(timeout=5)

        real_restore = hosts.restore
        calls = []

        def flaky_restore():
            calls.append(1)
            if len(calls) < 3:
                raise OSError("device busy")
            return real_restore()

        monkeypatch.setattr(hosts, "restore", flaky_restore)
        assert controller.disable().result(timeout=5) == []
        assert len(calls) == 3
        assert hosts_path.read_bytes() == ORIGINAL_HOSTS

    def test_failed_restore_is_reported_not_raised(self, make_controller, hosts, monkeypatch,
                                                    redirect_server, shared_state):
        controller = make_controller(NullFilterBackend())
        controller.apply_rules(["reddit.com"]).result(timeout=5)

        def broken_restore():
            raise OSError("read-only file system")

        monkeypatch.setattr(hosts, "restore", broken_restore)
        problems = controller.disable().result(timeout=5)
        assert problems and "hosts file" in problems[0]
        assert controller.status.state == BlockingState.INACTIVE
        assert "hosts file" in controller.status.reason
        assert hosts.has_backup()
        # Everything else was still torn down
        assert not redirect_server.is_running
        assert not shared_state.read().enabled
        monkeypatch.undo()


class TestSharedStateRefresh:
    def test_record_stays_fresh_for_long_sessions(self, make_controller, shared_state):
        controller = make_controller(NullFilterBackend(), refresh_interval=0.05)
        controller.apply_rules(["reddit.com"]).result(timeout=5)
        first = shared_state.read()

        assert _wait_for(lambda: shared_state.read().revision > first.revision)
        time.sleep(0.6)
        refreshed = shared_state.read_effective(max_age=0.4)
        assert refreshed.enabled
        assert refreshed.domains == ["reddit.com"]
        assert refreshed.updated_at > first.updated_at

    def test_refresh_stops_after_disable(self, make_controller, shared_state):
        controller = make_controller(NullFilterBackend(), refresh_interval=0.05)
        controller.apply_rules(["reddit.com"]).result(timeout=5)
        controller.disable().result(timeout=5)
        cleared = shared_state.read()
        time.sleep(0.2)
        assert shared_state.read().revision == cleared.revision
        assert not shared_state.read().enabled


class TestRecover:
    def test_restores_leftovers_from_crashed_session(self, make_controller, hosts, hosts_path, shared_state):
        hosts.block_domains(["reddit.com"])
        controller = make_controller()
        assert controller.recover() is True
        assert hosts_path.read_bytes() == ORIGINAL_HOSTS
        assert not hosts.has_backup()

    def test_nothing_to_recover(self, make_controller, hosts_path):
        controller = make_controller()
        assert controller.recover() is False
        assert hosts_path.read_bytes() == ORIGINAL_HOSTS


class TestShutdown:
    def test_shutdown_disables_and_rejects_new_work(self, make_controller, hosts_path):
        controller = make_controller(NullFilterBackend())
        controller.apply_rules(["reddit.com"]).result(timeout=5)
        assert controller.shutdown(timeout=5) == []
        assert hosts_path.read_bytes() == ORIGINAL_HOSTS
        with pytest.raises(RuntimeError):
            controller.apply_rules(["reddit.com"])
        assert controller.disable().result(timeout=1) == []
