#!/usr/bin/env python3
"""
macOS packet filter (pf) backend for the flow filter.

Blocked domains are resolved and their addresses are dropped through a pf
anchor. The anchor include added to pf.conf is removed again on disable, and pf
is switched back off only if it was off before activation. That earlier state is
kept in a small JSON file so a fresh process can still undo a crashed session.
"""
from __future__ import annotations

import os
import re
import json
import sys
import shlex
import socket
import logging
import ipaddress
import subprocess
import datetime as dt
from pathlib import Path
from typing import List, Sequence, Set, Tuple

from focusblock.network.flow_filter import FilterBackend, FilterState
from focusblock.utils.constants import PF_ANCHOR_FILE, PF_ANCHOR_NAME, PF_CONF_FILE, PF_STATE_FILE

PFCTL = "/sbin/pfctl"


def run_cmd(cmd: Sequence[str], check: bool = True) -> subprocess.CompletedProcess:
    """Run a command and return the CompletedProcess. Raise on failure if check is True."""
    result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    if check and result.returncode != 0:
        raise RuntimeError(f"Command failed ({result.returncode}): {shlex.join(cmd)}\nSTDERR:\n{result.stderr}")
    return result


def resolve_domain_ips(domains: Sequence[str]) -> Tuple[List[str], List[str]]:
    ipv4: Set[str] = set()
    ipv6: Set[str] = set()
    for dom in domains:
        try:
            infos = socket.getaddrinfo(dom, None, proto=socket.IPPROTO_TCP)
        except socket.gaierror:
            continue
        for family, _, _, _, sockaddr in infos:
            if family == socket.AF_INET:
                ipv4.add(sockaddr[0])
            elif family == socket.AF_INET6:
                ipv6.add(sockaddr[0].split('%')[0])
    # Never drop loopback/unspecified; the hosts redirect points there
    ipv4 = {ip for ip in ipv4 if not (ipaddress.ip_address(ip).is_loopback or ipaddress.ip_address(ip).is_unspecified)}
    ipv6 = {ip for ip in ipv6 if not (ipaddress.ip_address(ip).is_loopback or ipaddress.ip_address(ip).is_unspecified)}
    return sorted(ipv4), sorted(ipv6)


class PacketFilterBackend(FilterBackend):
    def __init__(self, anchor_name=PF_ANCHOR_NAME, anchor_file=PF_ANCHOR_FILE, pf_conf=PF_CONF_FILE,
                 state_file=PF_STATE_FILE, platform=None, resolver=resolve_domain_ips):
        self.anchor_name = anchor_name
        self.anchor_file = Path(anchor_file)
        self.pf_conf = Path(pf_conf)
        self.platform = platform or sys.platform
        self.state_file = Path(state_file)
        self.resolver = resolver

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------
    def _is_supported(self) -> bool:
        return self.platform == "darwin" and Path(PFCTL).exists()

    def _is_root(self) -> bool:
        return os.geteuid() == 0

    def pf_is_enabled(self) -> bool:
        res = run_cmd([PFCTL, "-s", "info"], check=False)
        # pfctl often prints status lines to stderr; check combined output.
        return "Status: Enabled" in (res.stdout or "") + (res.stderr or "")

    def anchor_rules_present(self) -> bool:
        res = run_cmd([PFCTL, "-a", self.anchor_name, "-s", "rules"], check=False)
        text = (res.stdout or "").strip()
        return res.returncode == 0 and "block drop" in text

    # ------------------------------------------------------------------
    # pf.conf anchor include
    # ------------------------------------------------------------------
    def _anchor_lines(self) -> str:
        return (
            f"\n# {self.anchor_name} anchor\n"
            f"anchor \"{self.anchor_name}\"\n"
            f"load anchor \"{self.anchor_name}\" from \"{self.anchor_file}\"\n"
        )

    def anchor_in_pfconf(self) -> bool:
        return f"anchor \"{self.anchor_name}\"" in self.pf_conf.read_text(encoding="utf-8")

    def ensure_anchor_in_pfconf(self) -> bool:
        content = self.pf_conf.read_text(encoding="utf-8")
        if f"anchor \"{self.anchor_name}\"" in content:
            return False
        self._write_atomic(self.pf_conf, content.rstrip("\n") + self._anchor_lines())
        return True

    def remove_anchor_from_pfconf(self) -> bool:
        content = self.pf_conf.read_text(encoding="utf-8")
        pattern = re.compile(
            rf"\n# {re.escape(self.anchor_name)} anchor\n"
            rf"anchor \"{re.escape(self.anchor_name)}\"\n"
            rf"load anchor \"{re.escape(self.anchor_name)}\" from \"[^\"]*\"\n"
        )
        new_content, n = pattern.subn("", content)
        if not n:
            return False
        if not new_content.endswith("\n"):
            new_content += "\n"
        self._write_atomic(self.pf_conf, new_content)
        return True

    # ------------------------------------------------------------------
    # Rollback state
    # ------------------------------------------------------------------
    def read_rollback_state(self):
        """What pf looked like before the first activation, or None"""
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logging.warning(f"Ignoring unreadable pf state at {self.state_file}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def write_rollback_state(self, state):
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._write_atomic(self.state_file, json.dumps(state, indent=2, sort_keys=True) + "\n")

    def clear_rollback_state(self):
        if self.state_file.exists():
            self.state_file.unlink()

    @staticmethod
    def _write_atomic(path: Path, content: str):
        temp = path.with_name(f"{path.name}.focusblock.tmp")
        with open(temp, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(temp, path)

    # ------------------------------------------------------------------
    # Anchor rules
    # ------------------------------------------------------------------
    def render_anchor_rules(self, ipv4: Sequence[str], ipv6: Sequence[str]) -> str:
        lines = [f"# {self.anchor_name} rules - generated {dt.datetime.now().astimezone().isoformat(timespec='seconds')}"]
        if ipv4:
            lines.append(f"block drop out quick inet to {{ {', '.join(ipv4)} }}")
        if ipv6:
            lines.append(f"block drop out quick inet6 to {{ {', '.join(ipv6)} }}")
        return "\n".join(lines) + "\n"

    def write_anchor_rules(self, ipv4, ipv6):
        self.anchor_file.parent.mkdir(parents=True, exist_ok=True)
        self._write_atomic(self.anchor_file, self.render_anchor_rules(ipv4, ipv6))

    # ------------------------------------------------------------------
    # FilterBackend
    # ------------------------------------------------------------------
    def status(self) -> FilterState:
        if not self._is_supported():
            return FilterState.NOT_CONFIGURED
        if not self._is_root():
            return FilterState.PENDING_CONSENT
        if self.pf_is_enabled() and self.anchor_rules_present():
            return FilterState.ACTIVE
        return FilterState.DISABLED

    def request_enable(self, record) -> FilterState:
        if not self._is_supported():
            return FilterState.NOT_CONFIGURED
        if not self._is_root():
            logging.info("pf filtering needs root; waiting for an elevated session")
            return FilterState.PENDING_CONSENT
        if record is None or not record.enabled:
            return FilterState.DISABLED
        if record.entire_internet_blocked:
            logging.info("pf address rules cannot express allow-list mode")
            return FilterState.NOT_CONFIGURED

        domains = sorted(set(record.domains) | {f"www.{d}" for d in record.domains})
        ipv4, ipv6 = self.resolver(domains)
        if not ipv4 and not ipv6:
            logging.warning("No addresses resolved for blocked domains; pf anchor left empty")
        # Saved before pf is touched so a later process can undo this one
        rollback = self.read_rollback_state()
        if rollback is None:
            rollback = {"pf_was_enabled": self.pf_is_enabled(), "modified_pfconf": False}
        if not self.anchor_in_pfconf():
            rollback["modified_pfconf"] = True
        self.write_rollback_state(rollback)
        self.ensure_anchor_in_pfconf()
        self.write_anchor_rules(ipv4, ipv6)
        run_cmd([PFCTL, "-f", str(self.pf_conf)])
        run_cmd([PFCTL, "-a", self.anchor_name, "-f", str(self.anchor_file)])
        if not self.pf_is_enabled():
            run_cmd([PFCTL, "-E"])
        logging.info(f"Loaded pf anchor {self.anchor_name} with {len(ipv4) + len(ipv6)} addresses")
        return self.status()

    def disable(self):
        if not self._is_supported() or not self._is_root():
            return
        self.anchor_file.parent.mkdir(parents=True, exist_ok=True)
        self._write_atomic(self.anchor_file, f"# {self.anchor_name} anchor cleared\n")
        run_cmd([PFCTL, "-a", self.anchor_name, "-F", "rules"], check=False)
        rollback = self.read_rollback_state() or {}
        if rollback.get("modified_pfconf") and self.remove_anchor_from_pfconf():
            run_cmd([PFCTL, "-f", str(self.pf_conf)], check=False)
        if rollback.get("pf_was_enabled") is False:
            run_cmd([PFCTL, "-d"], check=False)
        self.clear_rollback_state()
        logging.info(f"Cleared pf anchor {self.anchor_name}")

