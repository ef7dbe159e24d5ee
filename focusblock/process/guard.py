#!/usr/bin/env python3
import logging
import threading

import psutil

from focusblock.process.launch_events import PollingLaunchSource


def terminate_pid(pid):
    """Send a graceful termination request; does not wait for the process to exit"""
    try:
        psutil.Process(pid).terminate()
        return True
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied as e:
        logging.error(f"Not allowed to terminate pid {pid}: {e}")
        return False


class ProcessGuard:
    """Terminates blocked applications at activation and on every later launch.

    Applications are matched by their stable identifier (bundle id or executable
    path), never by display name. Each process gets at most one termination
    request per activation, whether the sweep or a launch event sees it first.
    """

    def __init__(self, source=None, terminator=terminate_pid):
        self.source = source if source is not None else PollingLaunchSource()
        self.terminator = terminator
        self.blocked_identifiers = frozenset()
        self._token = None
        self._requested = set()
        self._requested_lock = threading.Lock()
        self._lock = threading.Lock()

    @property
    def is_active(self) -> bool:
        return self._token is not None

    def apply_rules(self, app_identifiers):
        """Store the set, subscribe to launches and sweep running processes"""
        identifiers = frozenset(app_identifiers)
        with self._lock:
            self.blocked_identifiers = identifiers
            if not identifiers:
                self._unsubscribe()
                with self._requested_lock:
                    self._requested.clear()
                return 0
            if self._token is None:
                self._token = self.source.subscribe(self._on_launch)
        logging.info(f"Applying app blocking rules for {len(identifiers)} applications")
        return self.sweep()

    def sweep(self):
        """Request termination of every running blocked process; returns the count"""
        identifiers = self.blocked_identifiers
        requested = 0
        for info in self.source.running_processes():
            if info.identifier in identifiers:
                if not self._claim(info):
                    continue
                logging.info(f"Terminating running blocked app: {info.identifier} (pid {info.pid})")
                self._request_termination(info.pid)
                requested += 1
        return requested

    def disable_blocking(self):
        with self._lock:
            self._unsubscribe()
            self.blocked_identifiers = frozenset()
        with self._requested_lock:
            self._requested.clear()
        logging.info("Disabled app blocking")

    def _unsubscribe(self):
        if self._token is not None:
            token, self._token = self._token, None
            self.source.unsubscribe(token)

    def _on_launch(self, info):
        if info.identifier in self.blocked_identifiers and self._claim(info):
            logging.info(f"Terminating blocked app: {info.identifier} (pid {info.pid})")
            self._request_termination(info.pid)

    def _claim(self, info) -> bool:
        key = (info.pid, info.started)
        with self._requested_lock:
            if key in self._requested:
                return False
            self._requested.add(key)
            return True

    def _request_termination(self, pid):
        try:
            self.terminator(pid)
        except Exception as e:
            logging.error(f"Termination request for pid {pid} failed: {e}")
