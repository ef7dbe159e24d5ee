#!/usr/bin/env python3
import os
import re
import sys
import atexit
import signal
import logging
import argparse
import threading

import lockfile
from lockfile.pidlockfile import PIDLockFile, read_pid_from_pidfile
from daemon.daemon import DaemonContext

from focusblock.core.controller import BlockingController
from focusblock.core.models import BlockRuleSet
from focusblock.file_handlers.block_list import BlockListHandler
from focusblock.file_handlers.hosts_file import HostsFileEnforcer
from focusblock.file_handlers.shared_state import SharedState
from focusblock.network.flow_filter import FlowFilterService, NullFilterBackend
from focusblock.network.packet_filter import PacketFilterBackend
from focusblock.utils.constants import BLOCK_LIST_FILE, LOG_FILE, PID_FILE

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


# ---------- Helpers ----------

def parse_duration_to_seconds(text):
    if text is None:
        return None
    s = str(text).strip().lower()
    if s.isdigit():
        # Interpret as minutes by default
        return int(s) * 60
    match = re.fullmatch(r"(\d+)([smhd])", s)
    if not match:
        raise ValueError("Invalid duration. Examples: 45m, 2h, 30s, 1d, or integer minutes like 25")
    value = int(match.group(1))
    unit = match.group(2)
    return value * {"s": 1, "m": 60, "h": 3600, "d": 86400}[unit]


def humanize_seconds(total_seconds):
    seconds = max(0, int(total_seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def pid_is_running(pid):
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def configure_logging(log_file=LOG_FILE, level=logging.INFO):
    handlers = [logging.StreamHandler()]
    try:
        handlers.insert(0, logging.FileHandler(log_file))
    except OSError:
        # Unprivileged runs cannot write under /var/log
        pass
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


def build_controller(shared_state=None):
    """Controller wired with the platform's flow filter backend"""
    shared_state = shared_state if shared_state is not None else SharedState()
    backend = PacketFilterBackend() if sys.platform == "darwin" else NullFilterBackend()
    flow_filter = FlowFilterService(backend=backend, shared_state=shared_state)
    return BlockingController(flow_filter=flow_filter, shared_state=shared_state)


def collect_rules(args):
    """Rule set from -d/-a/-f, or the default block list when none is given"""
    domains = list(args.domains or [])
    apps = list(args.apps or [])
    if args.file:
        file_rules = BlockListHandler(args.file).read_rule_set()
    elif not domains and not apps:
        file_rules = BlockListHandler(BLOCK_LIST_FILE).read_rule_set()
    else:
        file_rules = BlockRuleSet()
    return BlockRuleSet.create(
        list(file_rules.website_domains) + domains,
        list(file_rules.application_identifiers) + apps,
        entire_internet_blocked=file_rules.entire_internet_blocked,
        allowed_domains=file_rules.allowed_domains,
    )


# ---------- Session ----------

def run_session(controller, rules, duration_seconds, stop_event):
    """Apply rules, wait for the duration or a stop request, then disable"""
    atexit.register(controller.shutdown)
    if controller.recover():
        logging.info("Cleaned up a previous session before blocking")

    try:
        status = controller.apply(rules).result()
    except OSError as e:
        logging.error(f"Blocking could not be enabled: {e}")
        controller.shutdown()
        return 1

    logging.info(f"Blocking is {status} for {humanize_seconds(duration_seconds)}")
    if stop_event.wait(duration_seconds):
        logging.info("Stop requested, ending blocking early")
    else:
        logging.info("Blocking period complete")

    problems = controller.shutdown()
    if problems:
        logging.error(f"Blocking ended with problems: {'; '.join(problems)}")
        return 1
    return 0


def run_foreground(rules, duration_seconds):
    stop_event = threading.Event()

    def _signal_handler(signum, frame):
        logging.info(f"Signal {signum} received, stopping")
        stop_event.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    pidfile = PIDLockFile(str(PID_FILE), timeout=0)
    try:
        pidfile.acquire()
    except lockfile.AlreadyLocked:
        logging.error(f"A blocking session is already running (pid {pidfile.read_pid()})")
        return 1
    except lockfile.LockFailed as e:
        logging.error(f"Cannot write pid file {PID_FILE}: {e}")
        return 1
    try:
        return run_session(build_controller(), rules, duration_seconds, stop_event)
    finally:
        pidfile.release()


def run_daemon(rules, duration_seconds):
    """Run the blocking session as a daemon"""
    pid_dir = os.path.dirname(str(PID_FILE))
    os.makedirs(pid_dir, exist_ok=True)

    stop_event = threading.Event()

    def _signal_handler(signum, frame):
        logging.info(f"Signal {signum} received, stopping")
        stop_event.set()

    context = DaemonContext(
        working_directory='/',
        umask=0o022,
        pidfile=PIDLockFile(str(PID_FILE), timeout=0),
        detach_process=True,
        files_preserve=[handler.stream.fileno() for handler in logging.getLogger().handlers if hasattr(handler, 'stream')]
    )
    context.signal_map = {signal.SIGTERM: _signal_handler, signal.SIGINT: _signal_handler}
    logging.info("Entering daemon context...")
    with context:
        return run_session(build_controller(), rules, duration_seconds, stop_event)


# ---------- Commands ----------

def do_block(args, parser):
    try:
        duration_seconds = parse_duration_to_seconds(args.duration)
    except ValueError as e:
        parser.error(str(e))
    if duration_seconds <= 0:
        parser.error("Duration must be positive")

    rules = collect_rules(args)
    if rules.is_empty:
        parser.error("Nothing to block. Use --domains, --apps or --file")

    pid = read_pid_from_pidfile(str(PID_FILE))
    if pid and pid_is_running(pid):
        logging.error(f"A blocking session is already running (pid {pid})")
        return 1
    if pid:
        logging.info(f"Removing stale pid file for pid {pid}")
        PIDLockFile(str(PID_FILE)).break_lock()

    if args.daemon:
        return run_daemon(rules, duration_seconds)
    return run_foreground(rules, duration_seconds)


def do_unblock():
    pid = read_pid_from_pidfile(str(PID_FILE))
    if pid and pid_is_running(pid):
        try:
            os.kill(pid, signal.SIGTERM)
        except PermissionError:
            print("Permission denied. Run as root.")
            return 1
        print(f"Sent SIGTERM to PID {pid}. Blocking will stop shortly.")
        return 0

    controller = build_controller()
    cleaned = controller.recover()
    if controller.status.reason:
        print(f"Cleanup incomplete: {controller.status.reason}")
        return 1
    print("Restored hosts file and cleared blocking state." if cleaned else "Nothing to unblock.")
    return 0


def do_status():
    record = SharedState().read()
    hosts = HostsFileEnforcer()
    pid = read_pid_from_pidfile(str(PID_FILE))

    print("Status:")
    print(f"- blocking enabled: {record.enabled}")
    if record.enabled:
        print(f"- blocked domains: {', '.join(record.domains) or 'none'}")
        if record.entire_internet_blocked:
            print(f"- entire internet blocked, allowed: {', '.join(record.allowed_domains) or 'none'}")
        if record.updated_at:
            print(f"- updated at: {record.updated_at.isoformat()}")
    try:
        print(f"- hosts block present: {hosts.is_section_present()}")
    except OSError as e:
        print(f"- hosts block present: unknown ({e})")
    print(f"- hosts backup present: {hosts.has_backup()}")
    print(f"- session pid: {pid if pid else 'none'} (running: {bool(pid and pid_is_running(pid))})")
    return 0


# ---------- CLI ----------

def build_arg_parser():
    parser = argparse.ArgumentParser(description='Block distracting websites and applications for a set duration')
    sub = parser.add_subparsers(dest="command", required=True)

    pb = sub.add_parser("block", help="Block websites and applications")
    pb.add_argument("--domains", "-d", nargs="*", default=[], help="Domains to block (space-separated)")
    pb.add_argument("--apps", "-a", nargs="*", default=[], help="Application bundle ids or executable paths")
    pb.add_argument("--file", "-f", help="Block list file (domains, app:<id>, allow:<domain>, *)")
    pb.add_argument("--duration", "-t", required=True, help="Duration (e.g., 25, 45m, 2h)")
    pb.add_argument("--daemon", action="store_true", help="Run as a daemon in the background")

    sub.add_parser("unblock", help="Stop the running session or clean up a leftover one")
    sub.add_parser("status", help="Show current block status")
    return parser


def main(argv=None):
    """Main entry point"""
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging()

    if args.command == "block":
        rc = do_block(args, parser)
    elif args.command == "unblock":
        rc = do_unblock()
    else:
        rc = do_status()
    sys.exit(rc)


if __name__ == "__main__":
    main()
