#!/usr/bin/env python3
"""
Process launch notifications.

ProcessGuard only depends on the LaunchEventSource interface, so tests (and
platforms with a native notification API) can provide their own source.
PollingLaunchSource is the portable implementation: it diffs the process table
with psutil at a fixed interval and reports each new PID once.
"""
from __future__ import annotations

import dataclasses
import functools
import itertools
import logging
import plistlib
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import psutil

from focusblock.utils.constants import PROCESS_POLL_INTERVAL


@dataclasses.dataclass(frozen=True)
class ProcessInfo:
    pid: int
    identifier: str
    name: str = ""
    # Creation time; tells a reused pid apart from the process that had it
    started: float = 0.0


LaunchCallback = Callable[[ProcessInfo], None]


@functools.lru_cache(maxsize=512)
def bundle_identifier(app_dir: str) -> Optional[str]:
    """CFBundleIdentifier of a macOS .app bundle, if it has one"""
    info_plist = Path(app_dir) / "Contents" / "Info.plist"
    try:
        with open(info_plist, "rb") as f:
            info = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError):
        return None
    ident = info.get("CFBundleIdentifier")
    return ident if isinstance(ident, str) and ident else None


def resolve_identifier(exe: Optional[str]) -> Optional[str]:
    """Stable identifier for an executable: bundle id when inside a .app, else its path.

    Display names are locale dependent and can be renamed, so they are never used.
    """
    if not exe:
        return None
    path = Path(exe)
    for parent in path.parents:
        if parent.suffix == ".app":
            ident = bundle_identifier(str(parent))
            if ident:
                return ident
            break
    return str(path)


def describe_process(proc: psutil.Process) -> Optional[ProcessInfo]:
    try:
        with proc.oneshot():
            exe = proc.exe()
            name = proc.name()
            started = proc.create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None
    identifier = resolve_identifier(exe)
    if identifier is None:
        return None
    return ProcessInfo(pid=proc.pid, identifier=identifier, name=name, started=started)


class LaunchEventSource:
    """Subscribe/unsubscribe interface for process launch notifications"""

    def subscribe(self, callback: LaunchCallback) -> int:
        raise NotImplementedError

    def unsubscribe(self, token: int) -> None:
        raise NotImplementedError

    def running_processes(self) -> Iterable[ProcessInfo]:
        raise NotImplementedError


class PollingLaunchSource(LaunchEventSource):
    def __init__(self, interval=PROCESS_POLL_INTERVAL):
        self.interval = interval
        self._subscribers: Dict[int, LaunchCallback] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()
        self._known_pids = set()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, callback: LaunchCallback) -> int:
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = callback
            if self._thread is None:
                self._known_pids = set(psutil.pids())
                self._stop_event.clear()
                self._thread = threading.Thread(
                    target=self._poll_loop, name="focusblock-launch-poll", daemon=True
                )
                self._thread.start()
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)
            if self._subscribers or self._thread is None:
                return
            thread, self._thread = self._thread, None
            self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=self.interval * 2)

    def running_processes(self) -> List[ProcessInfo]:
        infos = []
        for proc in psutil.process_iter():
            info = describe_process(proc)
            if info is not None:
                infos.append(info)
        return infos

    def poll_once(self) -> List[ProcessInfo]:
        """Diff the process table against the last poll and notify subscribers"""
        current = set(psutil.pids())
        new_pids = sorted(current - self._known_pids)
        self._known_pids = current
        launched = []
        for pid in new_pids:
            try:
                info = describe_process(psutil.Process(pid))
            except psutil.NoSuchProcess:
                continue
            if info is not None:
                launched.append(info)
        with self._lock:
            callbacks = list(self._subscribers.values())
        for info in launched:
            for callback in callbacks:
                try:
                    callback(info)
                except Exception:
                    logging.exception(f"Launch callback failed for pid {info.pid}")
        return launched

    def _poll_loop(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.poll_once()
            except psutil.Error as e:
                logging.error(f"Process poll failed: {e}")
