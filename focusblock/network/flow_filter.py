#!/usr/bin/env python3
"""
Optional OS-level flow filter.

The filter is strictly additive: it may be unconfigured, waiting for the user
to approve it out of band, or unavailable forever, and blocking still works
through the hosts file. FlowFilterService wraps a FilterBackend with a bounded
activation wait and keeps watching for a late consent in the background.

FlowVerdictProvider is the decision side that runs in the filter's own
execution context. It only reads SharedState and fails open when the record
is missing or stale.
"""
from __future__ import annotations

import enum
import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from focusblock.core.errors import ServiceUnavailable
from focusblock.core.models import BlockRuleSet, SharedConfigRecord
from focusblock.utils.constants import (
    FILTER_ACTIVATION_TIMEOUT,
    FILTER_POLL_INTERVAL,
    SHARED_STATE_MAX_AGE,
)


class FilterState(enum.Enum):
    NOT_CONFIGURED = "not_configured"
    PENDING_CONSENT = "pending_consent"
    ACTIVE = "active"
    DISABLED = "disabled"
    ERROR = "error"


class FilterBackend:
    """Platform hook for a per-connection filter"""

    def status(self) -> FilterState:
        raise NotImplementedError

    def request_enable(self, record: Optional[SharedConfigRecord]) -> FilterState:
        raise NotImplementedError

    def disable(self) -> None:
        raise NotImplementedError


class NullFilterBackend(FilterBackend):
    """Used when the platform has no flow filter at all"""

    def status(self):
        return FilterState.NOT_CONFIGURED

    def request_enable(self, record):
        return FilterState.NOT_CONFIGURED

    def disable(self):
        pass


class FlowFilterService:
    def __init__(self, backend=None, shared_state=None, timeout=FILTER_ACTIVATION_TIMEOUT,
                 poll_interval=FILTER_POLL_INTERVAL, consent_poll_interval=1.0):
        self.backend = backend if backend is not None else NullFilterBackend()
        self.shared_state = shared_state
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.consent_poll_interval = consent_poll_interval
        self._state = FilterState.NOT_CONFIGURED
        self._listeners: List[Callable[[FilterState], None]] = []
        self._lock = threading.Lock()
        self._stop_watch = threading.Event()
        self._watcher: Optional[threading.Thread] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="focusblock-filter")

    @property
    def state(self) -> FilterState:
        return self._state

    def subscribe(self, callback: Callable[[FilterState], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return unsubscribe

    def _set_state(self, state: FilterState):
        with self._lock:
            if state == self._state:
                return
            self._state = state
            listeners = list(self._listeners)
        logging.info(f"Flow filter state: {state.value}")
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logging.exception("Flow filter state listener failed")

    def activate(self) -> "Future[FilterState]":
        """Start activation; the future resolves within the timeout.

        Resolves to ACTIVE or PENDING_CONSENT, or fails with ServiceUnavailable
        when the backend is not configured or reports an error.
        """
        self._stop_watch.set()
        return self._executor.submit(self._activate)

    def _activate(self) -> FilterState:
        record = self.shared_state.read() if self.shared_state is not None else None
        try:
            state = self.backend.request_enable(record)
        except Exception as e:
            self._set_state(FilterState.ERROR)
            raise ServiceUnavailable(f"Flow filter activation failed: {e}") from e

        deadline = time.monotonic() + self.timeout
        while state in (FilterState.PENDING_CONSENT, FilterState.DISABLED) and time.monotonic() < deadline:
            time.sleep(self.poll_interval)
            state = self.backend.status()

        if state == FilterState.NOT_CONFIGURED:
            self._set_state(state)
            raise ServiceUnavailable("Flow filter is not configured")
        if state == FilterState.ERROR:
            self._set_state(state)
            raise ServiceUnavailable("Flow filter reported an error")
        if state == FilterState.ACTIVE:
            self._set_state(state)
            return state

        logging.info(f"Flow filter not confirmed after {self.timeout}s, waiting for consent in background")
        self._set_state(FilterState.PENDING_CONSENT)
        self._start_consent_watch()
        return FilterState.PENDING_CONSENT

    def _start_consent_watch(self):
        self._stop_watch = threading.Event()
        self._watcher = threading.Thread(
            target=self._watch_consent, args=(self._stop_watch,),
            name="focusblock-filter-consent", daemon=True,
        )
        self._watcher.start()

    def _watch_consent(self, stop: threading.Event):
        while not stop.wait(self.consent_poll_interval):
            try:
                state = self.backend.status()
            except Exception as e:
                logging.error(f"Flow filter status check failed: {e}")
                continue
            if state == FilterState.ACTIVE and not stop.is_set():
                self._set_state(state)
                return

    def deactivate(self):
        """Turn the filter off; errors are logged, never raised"""
        self._stop_watch.set()
        try:
            self.backend.disable()
        except Exception as e:
            logging.error(f"Failed to disable flow filter: {e}")
            self._set_state(FilterState.ERROR)
            return
        if self._state != FilterState.NOT_CONFIGURED:
            self._set_state(FilterState.DISABLED)

    def close(self):
        self._stop_watch.set()
        self._executor.shutdown(wait=False)


class FlowVerdictProvider:
    """Per-flow allow/drop decision for a filter running in another context"""

    ALLOW = "allow"
    DROP = "drop"

    def __init__(self, shared_state, max_age=SHARED_STATE_MAX_AGE):
        self.shared_state = shared_state
        self.max_age = max_age
        self._cached_key = None
        self._cached_rules = BlockRuleSet()

    def _rules(self, now=None) -> Optional[BlockRuleSet]:
        record = self.shared_state.read_effective(self.max_age, now=now)
        if not record.enabled:
            return None
        key = (record.revision, record.updated_at)
        if key != self._cached_key:
            self._cached_rules = record.to_rule_set()
            self._cached_key = key
        return self._cached_rules

    def verdict(self, host: str, now=None) -> str:
        rules = self._rules(now)
        if rules is None:
            return self.ALLOW
        return self.DROP if rules.should_block(host) else self.ALLOW
