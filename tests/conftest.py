"""Shared pytest fixtures for focusblock tests."""

from __future__ import annotations

import threading

import pytest

from focusblock.file_handlers.hosts_file import HostsFileEnforcer
from focusblock.file_handlers.shared_state import SharedState
from focusblock.network.flow_filter import FilterBackend, FilterState
from focusblock.network.redirect_server import LocalRedirectServer
from focusblock.process.launch_events import LaunchEventSource

ORIGINAL_HOSTS = (
    b"##\n"
    b"# Host Database\n"
    b"##\n"
    b"127.0.0.1\tlocalhost\n"
    b"255.255.255.255\tbroadcasthost\n"
    b"::1             localhost\n"
)


# =============================================================================
# Fakes
# =============================================================================

class FakeLaunchSource(LaunchEventSource):
    """Launch source driven by the test instead of the process table"""

    def __init__(self, running=()):
        self.running = list(running)
        self.subscribers = {}
        self._next_token = 0

    def subscribe(self, callback):
        self._next_token += 1
        self.subscribers[self._next_token] = callback
        return self._next_token

    def unsubscribe(self, token):
        self.subscribers.pop(token, None)

    def running_processes(self):
        return list(self.running)

    def launch(self, info):
        self.running.append(info)
        for callback in list(self.subscribers.values()):
            callback(info)


class RecordingTerminator:
    def __init__(self):
        self.pids = []

    def __call__(self, pid):
        self.pids.append(pid)
        return True


class FakeFilterBackend(FilterBackend):
    """Backend whose answers are set by the test.

    enable_state is returned by request_enable(); status() returns
    current_state, which a test can flip to simulate a late consent.
    """

    def __init__(self, enable_state=FilterState.ACTIVE, current_state=None, enable_error=None):
        self.enable_state = enable_state
        self.current_state = current_state if current_state is not None else enable_state
        self.enable_error = enable_error
        self.enable_calls = []
        self.disable_calls = 0
        self.disable_error = None
        self.enabled = threading.Event()

    def status(self):
        return self.current_state

    def request_enable(self, record):
        self.enable_calls.append(record)
        if self.enable_error is not None:
            raise self.enable_error
        self.enabled.set()
        return self.enable_state

    def disable(self):
        self.disable_calls += 1
        if self.disable_error is not None:
            raise self.disable_error
        self.current_state = FilterState.DISABLED


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def hosts_path(tmp_path):
    path = tmp_path / "hosts"
    path.write_bytes(ORIGINAL_HOSTS)
    return path


@pytest.fixture
def hosts(tmp_path, hosts_path):
    return HostsFileEnforcer(
        hosts_path=hosts_path,
        hosts_backup=tmp_path / "state" / "hosts.backup",
        flush_dns=False,
    )


@pytest.fixture
def shared_state(tmp_path):
    return SharedState(tmp_path / "state" / "shared_state.json", lock_timeout=2)


@pytest.fixture
def launch_source():
    return FakeLaunchSource()


@pytest.fixture
def terminator():
    return RecordingTerminator()


@pytest.fixture
def redirect_server():
    server = LocalRedirectServer(port=0, connection_timeout=0.5)
    yield server
    server.stop()
