#!/usr/bin/env python3
"""
Shared desired-state store.

The controller is the single writer; any number of readers (the flow filter
worker, the CLI status command, another process) may read concurrently. Each
write goes to a temporary file that is fsynced and then published with
os.replace, so a reader sees either the previous record or the new one and
never a partial write. Writers also hold a lockfile so two processes cannot
interleave their revision counters.

Readers that make filtering decisions use read_effective(): a missing,
disabled or stale record means "do not block" (fail open).
"""
import os
import json
import logging
from pathlib import Path

import lockfile

from focusblock.core.models import SharedConfigRecord, now_utc
from focusblock.utils.constants import (
    SHARED_STATE_FILE,
    SHARED_STATE_LOCK_TIMEOUT,
    SHARED_STATE_MAX_AGE,
)


class SharedState:
    def __init__(self, state_path=SHARED_STATE_FILE, lock_timeout=SHARED_STATE_LOCK_TIMEOUT):
        self.state_path = Path(state_path)
        self.lock_timeout = lock_timeout

    def _ensure_state_dir(self):
        self.state_path.parent.mkdir(parents=True, exist_ok=True)

    def _read_raw(self):
        with open(self.state_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def read(self) -> SharedConfigRecord:
        """Return the last published record, or a disabled default"""
        try:
            data = self._read_raw()
        except FileNotFoundError:
            return SharedConfigRecord()
        except (OSError, ValueError) as e:
            logging.warning(f"Shared state at {self.state_path} unreadable, using default: {e}")
            return SharedConfigRecord()
        try:
            return SharedConfigRecord.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            logging.warning(f"Shared state at {self.state_path} malformed, using default: {e}")
            return SharedConfigRecord()

    def read_effective(self, max_age=SHARED_STATE_MAX_AGE, now=None) -> SharedConfigRecord:
        """Record a filtering consumer should act on; stale or missing means not blocking"""
        record = self.read()
        if not record.enabled:
            return SharedConfigRecord(revision=record.revision)
        age = record.age(now)
        if age is None or age > max_age:
            logging.info(f"Shared state revision {record.revision} is stale ({age}s old), failing open")
            return SharedConfigRecord(revision=record.revision)
        return record

    def write(self, record: SharedConfigRecord) -> SharedConfigRecord:
        """Publish a record atomically and return it with its new revision"""
        self._ensure_state_dir()
        lock = lockfile.LockFile(str(self.state_path))
        lock.acquire(timeout=self.lock_timeout)
        try:
            previous = self.read()
            published = SharedConfigRecord(
                domains=list(record.domains),
                enabled=record.enabled,
                updated_at=record.updated_at or now_utc(),
                allowed_domains=list(record.allowed_domains),
                entire_internet_blocked=record.entire_internet_blocked,
                revision=previous.revision + 1,
            )
            tmp_path = self.state_path.with_name(f"{self.state_path.name}.{os.getpid()}.tmp")
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(published.to_dict(), f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.state_path)
            except BaseException:
                if tmp_path.exists():
                    tmp_path.unlink()
                raise
        finally:
            lock.release()
        logging.info(
            f"Published shared state revision {published.revision}: "
            f"{len(published.domains)} domains, enabled={published.enabled}"
        )
        return published

    def clear(self) -> SharedConfigRecord:
        return self.write(SharedConfigRecord(enabled=False, updated_at=now_utc()))

    def is_stale(self, max_age=SHARED_STATE_MAX_AGE, now=None) -> bool:
        age = self.read().age(now)
        return age is None or age > max_age

