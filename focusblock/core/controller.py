#!/usr/bin/env python3
"""
Blocking controller.

Reconciles the desired rule set against every enforcement mechanism:

- SharedState always carries the desired configuration;
- the flow filter is tried in the background and never waited on for longer
  than its activation timeout;
- the hosts file, the local redirect server and the process guard are engaged
  unconditionally as the portable path.

All operations run on one worker thread, so apply() and disable() are never
executed concurrently and interactive callers get a Future back immediately.
While blocking is enforced the SharedState record is republished every
refresh_interval seconds, so readers never see a long session as stale.
"""
import time
import logging
import threading
import concurrent.futures
from concurrent.futures import ThreadPoolExecutor

import lockfile

from focusblock.core.errors import AlreadyInProgress, ServiceUnavailable
from focusblock.core.models import (
    BlockingState,
    BlockingStatus,
    BlockRuleSet,
    SharedConfigRecord,
)
from focusblock.file_handlers.hosts_file import HostsFileEnforcer
from focusblock.file_handlers.shared_state import SharedState
from focusblock.network.flow_filter import FilterState
from focusblock.network.redirect_server import LocalRedirectServer
from focusblock.process.guard import ProcessGuard
from focusblock.utils.constants import RESTORE_ATTEMPTS, RESTORE_RETRY_DELAY, SHARED_STATE_REFRESH_INTERVAL

FILTER_WAIT_SLACK = 1.0  # seconds


class BlockingController:
    def __init__(self, hosts=None, redirect_server=None, process_guard=None, flow_filter=None,
                 shared_state=None, restore_attempts=RESTORE_ATTEMPTS,
                 restore_retry_delay=RESTORE_RETRY_DELAY, refresh_interval=SHARED_STATE_REFRESH_INTERVAL):
        self.hosts = hosts if hosts is not None else HostsFileEnforcer()
        self.redirect_server = redirect_server if redirect_server is not None else LocalRedirectServer()
        self.process_guard = process_guard if process_guard is not None else ProcessGuard()
        self.shared_state = shared_state if shared_state is not None else SharedState()
        self.flow_filter = flow_filter
        self.restore_attempts = restore_attempts
        self.restore_retry_delay = restore_retry_delay
        self.refresh_interval = refresh_interval

        self._status = BlockingStatus()
        self._rules = BlockRuleSet()
        self._mechanism_problems = []
        self._listeners = []
        self._pending = 0
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="focusblock-controller")
        self._closed = False
        self._filter_unsubscribe = None
        self._refresher = None
        self._refresh_stop = None
        if flow_filter is not None:
            self._filter_unsubscribe = flow_filter.subscribe(self._on_filter_state)

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------
    @property
    def status(self) -> BlockingStatus:
        return self._status

    @property
    def rules(self) -> BlockRuleSet:
        return self._rules

    def subscribe(self, callback):
        """Call callback(BlockingStatus) on every transition; returns an unsubscribe function"""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return unsubscribe

    def _set_status(self, state, reason=None):
        status = BlockingStatus(state, reason)
        with self._lock:
            if status == self._status:
                return
            self._status = status
            listeners = list(self._listeners)
        logging.info(f"Blocking state: {status}")
        for listener in listeners:
            try:
                listener(status)
            except Exception:
                logging.exception("Blocking state listener failed")

    def should_block(self, host: str) -> bool:
        """Synchronous decision against the active rule set"""
        return self._rules.should_block(host)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def _submit(self, fn, *args):
        def run():
            try:
                return fn(*args)
            finally:
                with self._lock:
                    self._pending -= 1
        return self._executor.submit(run)

    def apply(self, rules: BlockRuleSet):
        """Start enforcing rules; returns a Future resolving to the settled status.

        Raises AlreadyInProgress right away if another operation is running.
        Calling it while already active re-applies in place, reusing the hosts
        backup taken by the first activation.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Controller has been shut down")
            if self._pending or self._status.is_busy:
                raise AlreadyInProgress(f"Blocking is {self._status.state.value}")
            self._pending += 1
        self._set_status(BlockingState.ACTIVATING)
        return self._submit(self._activate, rules)

    def apply_rules(self, domains, apps=(), entire_internet_blocked=False, allowed_domains=()):
        return self.apply(BlockRuleSet.create(domains, apps, entire_internet_blocked, allowed_domains))

    def disable(self):
        """Tear down every mechanism; the Future never fails.

        It resolves to the list of teardown problems, empty when everything was
        reverted cleanly. Safe to call when nothing was applied, or while an
        activation is still running (it is queued behind it).
        """
        with self._lock:
            if self._closed:
                done = concurrent.futures.Future()
                done.set_result([])
                return done
            self._pending += 1
            activating = self._status.state == BlockingState.ACTIVATING
        if not activating:
            self._set_status(BlockingState.DISABLING)
        return self._submit(self._deactivate)

    def recover(self) -> bool:
        """Undo what a session that ended without disable() left behind.

        Returns True if leftovers were found.
        """
        if self._status.state != BlockingState.INACTIVE:
            return False
        leftovers = (
            self.hosts.has_backup()
            or self.hosts.is_section_present()
            or self.shared_state.read().enabled
        )
        if not leftovers:
            return False
        logging.warning("Found leftovers from an unfinished blocking session, restoring")
        self.disable().result()
        return True

    def shutdown(self, timeout=None):
        """Disable blocking and stop the worker thread"""
        if self._closed:
            return
        problems = self.disable().result(timeout=timeout)
        with self._lock:
            self._closed = True
        if self._filter_unsubscribe is not None:
            self._filter_unsubscribe()
        if self.flow_filter is not None:
            self.flow_filter.close()
        self._executor.shutdown(wait=True)
        return problems

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _activate(self, rules: BlockRuleSet) -> BlockingStatus:
        logging.info(
            f"Applying blocking rules: {len(rules.website_domains)} domains, "
            f"{len(rules.application_identifiers)} applications"
        )
        problems = []

        filter_future = None
        try:
            self.shared_state.write(SharedConfigRecord.from_rule_set(rules))
        except (OSError, lockfile.Error) as e:
            logging.error(f"Failed to publish shared state: {e}")
            problems.append(f"shared state not published: {e}")
        else:
            if self.flow_filter is not None:
                filter_future = self.flow_filter.activate()

        try:
            self._apply_hosts(rules)
        except OSError as e:
            # PermissionError included: nothing was written, undo the rest
            logging.error(f"Failed to update hosts file: {e}")
            self._teardown()
            self._set_status(BlockingState.ERROR, f"hosts file not updated: {e}")
            raise

        problems.extend(self._apply_redirect_server(rules))
        problems.extend(self._apply_process_guard(rules))

        with self._lock:
            self._rules = rules
            self._mechanism_problems = list(problems)

        filter_problem = self._wait_for_filter(filter_future)
        if filter_problem:
            problems.append(filter_problem)

        self._start_refresher()
        if problems:
            self._set_status(BlockingState.DEGRADED, "; ".join(problems))
        else:
            self._set_status(BlockingState.ACTIVE)
        return self._status

    def _apply_hosts(self, rules):
        if rules.website_domains:
            self.hosts.block_domains(sorted(rules.website_domains))
        else:
            self.hosts.restore()

    def _apply_redirect_server(self, rules):
        try:
            if rules.website_domains:
                self.redirect_server.start()
            else:
                self.redirect_server.stop()
        except OSError as e:
            logging.error(f"Local redirect server failed to start: {e}")
            return [f"redirect server unavailable: {e}"]
        return []

    def _apply_process_guard(self, rules):
        try:
            self.process_guard.apply_rules(rules.application_identifiers)
        except Exception as e:
            logging.error(f"Failed to apply app blocking rules: {e}")
            return [f"application blocking unavailable: {e}"]
        return []

    def _wait_for_filter(self, filter_future):
        if filter_future is None:
            return "flow filter not available"
        try:
            state = filter_future.result(timeout=self.flow_filter.timeout + FILTER_WAIT_SLACK)
        except ServiceUnavailable as e:
            logging.info(f"Flow filter unavailable, using fallback only: {e}")
            return "flow filter unavailable"
        except concurrent.futures.TimeoutError:
            logging.warning("Flow filter activation did not finish in time")
            return "flow filter activation timed out"
        if state != FilterState.ACTIVE:
            return f"flow filter {state.value}"
        return None

    def _on_filter_state(self, state):
        if state != FilterState.ACTIVE:
            return
        with self._lock:
            upgrade = self._status.state == BlockingState.DEGRADED and not self._mechanism_problems
        if upgrade:
            logging.info("Flow filter became active after activation")
            self._set_status(BlockingState.ACTIVE)

    # ------------------------------------------------------------------
    # SharedState refresh
    # ------------------------------------------------------------------
    def _start_refresher(self):
        if self._refresher is not None:
            return
        self._refresh_stop = threading.Event()
        self._refresher = threading.Thread(
            target=self._refresh_loop, args=(self._refresh_stop,),
            name="focusblock-state-refresh", daemon=True,
        )
        self._refresher.start()

    def _stop_refresher(self):
        if self._refresher is None:
            return
        thread, self._refresher = self._refresher, None
        self._refresh_stop.set()
        thread.join(timeout=1)

    def _refresh_loop(self, stop):
        while not stop.wait(self.refresh_interval):
            try:
                # Runs on the worker so it is ordered with apply() and disable()
                self._executor.submit(self._refresh_shared_state)
            except RuntimeError:
                return

    def _refresh_shared_state(self) -> bool:
        with self._lock:
            rules = self._rules
            enforcing = self._status.is_enforcing
        if not enforcing:
            return False
        try:
            self.shared_state.write(SharedConfigRecord.from_rule_set(rules))
        except (OSError, lockfile.Error) as e:
            logging.error(f"Failed to refresh shared state: {e}")
            return False
        return True

    def _deactivate(self):
        self._set_status(BlockingState.DISABLING)
        problems = self._teardown()
        if problems:
            self._set_status(BlockingState.INACTIVE, "; ".join(problems))
        else:
            self._set_status(BlockingState.INACTIVE)
        return problems

    def _teardown(self):
        """Revert every mechanism independently; returns the problems found"""
        logging.info("Disabling blocking")
        problems = []
        self._stop_refresher()
        with self._lock:
            self._rules = BlockRuleSet()
            self._mechanism_problems = []

        if self.flow_filter is not None:
            try:
                self.flow_filter.deactivate()
            except Exception as e:
                logging.error(f"Failed to deactivate flow filter: {e}")
                problems.append(f"flow filter: {e}")

        try:
            self.process_guard.disable_blocking()
        except Exception as e:
            logging.error(f"Failed to disable app blocking: {e}")
            problems.append(f"app blocking: {e}")

        try:
            self.redirect_server.stop()
        except Exception as e:
            logging.error(f"Failed to stop redirect server: {e}")
            problems.append(f"redirect server: {e}")

        problem = self._restore_hosts()
        if problem:
            problems.append(problem)

        try:
            self.shared_state.clear()
        except (OSError, lockfile.Error) as e:
            logging.error(f"Failed to clear shared state: {e}")
            problems.append(f"shared state: {e}")

        logging.info("Blocking disabled")
        return problems

    def _restore_hosts(self):
        for attempt in range(1, self.restore_attempts + 1):
            try:
                self.hosts.restore()
                return None
            except PermissionError as e:
                logging.error(f"Not permitted to restore hosts file: {e}")
                return f"hosts file: {e}"
            except OSError as e:
                logging.warning(f"Hosts restore attempt {attempt}/{self.restore_attempts} failed: {e}")
                if attempt < self.restore_attempts:
                    time.sleep(self.restore_retry_delay)
        logging.error("Giving up restoring hosts file; backup kept for next launch")
        return "hosts file: restore failed"
