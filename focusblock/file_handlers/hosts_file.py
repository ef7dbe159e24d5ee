#!/usr/bin/env python3
import os
import re
import sys
import shutil
import logging
import datetime as dt
import subprocess
from pathlib import Path

from focusblock.core.errors import BackupNotFound
from focusblock.core.models import HostsBackup, normalize_domain
from focusblock.utils.constants import (
    HOSTS_BACKUP_FILE,
    HOSTS_END_MARK,
    HOSTS_FILE,
    HOSTS_REDIRECT_ADDRESS,
    HOSTS_START_MARK,
)


class HostsFileEnforcer:
    """Owns a marker-delimited section of the hosts file.

    The pristine file is backed up once per activation, before the first
    mutation, and the backup is deleted only after a verified restore. Content
    is handled as bytes so a restore is byte-for-byte identical.
    """

    def __init__(self, hosts_path=HOSTS_FILE, hosts_backup=HOSTS_BACKUP_FILE,
                 marker_start=HOSTS_START_MARK, marker_end=HOSTS_END_MARK,
                 redirect_address=HOSTS_REDIRECT_ADDRESS, flush_dns=True):
        self.hosts_path = Path(hosts_path)
        self.hosts_backup = Path(hosts_backup)
        self.marker_start = marker_start
        self.marker_end = marker_end
        self.redirect_address = redirect_address
        self.flush_dns = flush_dns
        start = re.escape(marker_start.encode())
        end = re.escape(marker_end.encode())
        self._section_pattern = re.compile(start + rb".*?" + end + rb"[ \t]*(?:\r?\n)?", re.S)
        # A section written after a line with no newline owns that separator
        # and, like the original file, ends without a newline of its own
        self._unterminated_section_pattern = re.compile(
            rb"\r?\n" + start + rb"(?:(?!" + start + rb").)*?" + end + rb"[ \t]*\Z",
            re.S,
        )

    # ------------------------------------------------------------------
    # Section rendering
    # ------------------------------------------------------------------
    def strip_managed_section(self, content: bytes) -> bytes:
        """Remove every managed section, leaving surrounding bytes untouched"""
        content = self._unterminated_section_pattern.sub(b"", content)
        return self._section_pattern.sub(b"", content)

    def render_managed_section(self, domains) -> bytes:
        lines = [self.marker_start]
        for domain in sorted({normalize_domain(d) for d in domains} - {""}):
            lines.append(f"{self.redirect_address} {domain}")
            if not domain.startswith("www."):
                lines.append(f"{self.redirect_address} www.{domain}")
        lines.append(self.marker_end)
        return ("\n".join(lines) + "\n").encode()

    def is_section_present(self) -> bool:
        try:
            content = self._read_hosts()
        except FileNotFoundError:
            return False
        return self._section_pattern.search(content) is not None

    # ------------------------------------------------------------------
    # File access
    # ------------------------------------------------------------------
    def _read_hosts(self) -> bytes:
        with open(self.hosts_path, 'rb') as f:
            return f.read()

    def _atomic_write(self, path: Path, content: bytes):
        """Write content next to path and rename it into place"""
        temp = path.with_name(f".{path.name}.focusblock.tmp")
        try:
            with open(temp, 'wb') as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if path.exists():
                shutil.copymode(path, temp)
            os.replace(temp, path)
        except BaseException:
            if temp.exists():
                temp.unlink()
            raise

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------
    def has_backup(self) -> bool:
        return self.hosts_backup.exists()

    def read_backup(self) -> HostsBackup:
        try:
            with open(self.hosts_backup, 'rb') as f:
                content = f.read()
            captured_at = dt.datetime.fromtimestamp(self.hosts_backup.stat().st_mtime, dt.timezone.utc)
        except FileNotFoundError:
            raise BackupNotFound(f"No hosts backup at {self.hosts_backup}")
        return HostsBackup(original_content=content, captured_at=captured_at)

    def backup_hosts(self, content: bytes) -> bool:
        """Capture a backup unless this activation already has one"""
        if self.has_backup():
            logging.info(f"Reusing existing hosts backup at {self.hosts_backup}")
            return False
        self.hosts_backup.parent.mkdir(parents=True, exist_ok=True)
        self._atomic_write(self.hosts_backup, content)
        logging.info(f"Created hosts file backup at {self.hosts_backup}")
        return True

    def discard_backup(self):
        if self.has_backup():
            self.hosts_backup.unlink()
            logging.info("Removed hosts file backup")

    # ------------------------------------------------------------------
    # Block / restore
    # ------------------------------------------------------------------
    def block_domains(self, domains):
        """Replace the managed section with one redirecting domains.

        Raises PermissionError when the hosts file cannot be replaced; the file
        on disk is left as it was.
        """
        hosts_content = self._read_hosts()
        new_content = self.strip_managed_section(hosts_content)
        # A section left by a crashed session is not part of the original
        created_backup = self.backup_hosts(new_content)

        section = self.render_managed_section(domains)
        if new_content and not new_content.endswith(b"\n"):
            new_content += b"\n" + section[:-1]
        else:
            new_content += section

        try:
            self._atomic_write(self.hosts_path, new_content)
        except OSError:
            if created_backup:
                # Nothing was mutated; a backup would look like a crashed session
                self.discard_backup()
            raise

        logging.info(f"Blocked {len(domains)} domains in hosts file")
        self.flush_dns_cache()

    def restore(self) -> bool:
        """Put the hosts file back the way it was before blocking.

        Returns True if the file was changed.
        """
        try:
            backup = self.read_backup()
        except BackupNotFound:
            return self._strip_only()

        self._atomic_write(self.hosts_path, backup.original_content)
        if self._read_hosts() != backup.original_content:
            raise OSError(f"Hosts file at {self.hosts_path} does not match backup after restore")
        self.discard_backup()
        logging.info("Restored hosts file from backup")
        self.flush_dns_cache()
        return True

    def _strip_only(self) -> bool:
        try:
            hosts_content = self._read_hosts()
        except FileNotFoundError:
            return False
        cleaned = self.strip_managed_section(hosts_content)
        if cleaned == hosts_content:
            return False
        self._atomic_write(self.hosts_path, cleaned)
        logging.info("No hosts backup found, removed managed section only")
        self.flush_dns_cache()
        return True

    # ------------------------------------------------------------------
    # DNS cache flush
    # ------------------------------------------------------------------
    def flush_dns_cache(self):
        if not self.flush_dns:
            return False
        try:
            if sys.platform == "darwin":
                subprocess.run(["/usr/bin/dscacheutil", "-flushcache"], check=False)
                subprocess.run(["/usr/bin/killall", "-HUP", "mDNSResponder"], check=False)
                logging.info("Flushed DNS cache (macOS)")
            elif sys.platform == "linux":
                if shutil.which("resolvectl"):
                    subprocess.run(["resolvectl", "flush-caches"], check=False)
                elif shutil.which("systemd-resolve"):
                    subprocess.run(["systemd-resolve", "--flush-caches"], check=False)
                logging.info("Flushed DNS cache (Linux)")
            elif sys.platform == "win32":
                subprocess.run(["ipconfig", "/flushdns"], check=False)
            return True
        except OSError as e:
            logging.error(f"Failed to flush DNS cache: {e}")
            return False
