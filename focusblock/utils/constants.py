#!/usr/bin/env python3
from pathlib import Path

# ---------- Identity ----------

APP_NAME = "FocusBlock"
APP_SLUG = "focusblock"

# ---------- Hosts file ----------

HOSTS_FILE = Path("/etc/hosts")
HOSTS_START_MARK = f"# {APP_NAME} Block - START"
HOSTS_END_MARK = f"# {APP_NAME} Block - END"
HOSTS_REDIRECT_ADDRESS = "0.0.0.0"

# ---------- State ----------

STATE_DIR = Path("/var/lib") / APP_SLUG
HOSTS_BACKUP_FILE = STATE_DIR / "hosts.backup"
SHARED_STATE_FILE = STATE_DIR / "shared_state.json"
BLOCK_LIST_FILE = Path("/etc") / APP_SLUG / "block_list.txt"

PID_FILE = Path("/var/run") / f"{APP_SLUG}.pid"
LOG_FILE = Path("/var/log") / f"{APP_SLUG}.log"

# ---------- Local redirect server ----------

REDIRECT_HOST = "127.0.0.1"
REDIRECT_PORT = 8080
MAX_REQUEST_BYTES = 65536
CONNECTION_TIMEOUT = 2.0  # seconds

# ---------- Timing ----------

FILTER_ACTIVATION_TIMEOUT = 5.0  # seconds
FILTER_POLL_INTERVAL = 0.25  # seconds
SHARED_STATE_MAX_AGE = 24 * 3600.0  # seconds
SHARED_STATE_REFRESH_INTERVAL = 3600.0  # seconds, well under SHARED_STATE_MAX_AGE
SHARED_STATE_LOCK_TIMEOUT = 5.0  # seconds
RESTORE_ATTEMPTS = 3
RESTORE_RETRY_DELAY = 0.2  # seconds
PROCESS_POLL_INTERVAL = 1.0  # seconds

# ---------- Packet filter ----------

PF_ANCHOR_NAME = APP_SLUG
PF_ANCHOR_FILE = Path("/etc/pf.anchors") / PF_ANCHOR_NAME
PF_CONF_FILE = Path("/etc/pf.conf")
PF_STATE_FILE = STATE_DIR / "pf_state.json"
