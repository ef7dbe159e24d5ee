#!/usr/bin/env python3
from __future__ import annotations

import contextlib
import dataclasses
import datetime as dt
import enum
import ipaddress
import re
from typing import FrozenSet, Iterable, List, Optional


def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def normalize_domain(domain: str) -> str:
    """Normalize a domain string to a bare hostname.
    - strips scheme (http/https), path/query/fragment/port
    - lowercases
    - removes a trailing dot and a single leading www.
    - preserves IP literals as-is
    """
    d = domain.strip().lower()
    d = re.sub(r"^([a-z][a-z0-9+.-]*://)", "", d)
    d = d.split('/')[0]
    d = d.split('#')[0]
    d = d.split('?', 1)[0]

    # Handle bracketed IPv6 like [2001:db8::1]:443
    if d.startswith('['):
        end = d.find(']')
        if end != -1:
            maybe_ip = d[1:end]
            with contextlib.suppress(ValueError):
                ipaddress.ip_address(maybe_ip)
                return maybe_ip

    with contextlib.suppress(ValueError):
        ipaddress.ip_address(d)
        return d

    if ':' in d:
        d = d.split(':', 1)[0]

    d = d.rstrip('.')
    if d.startswith('www.') and d.count('.') >= 2:
        d = d[4:]
    return d


def normalize_domains(domains: Iterable[str]) -> FrozenSet[str]:
    return frozenset(nd for nd in (normalize_domain(d) for d in domains) if nd)


def host_matches(host: str, domains: Iterable[str]) -> bool:
    """True if host is one of domains, its www. variant, or a subdomain of it."""
    h = host.strip().lower().rstrip('.')
    if not h:
        return False
    for d in domains:
        d = d.lower()
        if h == d or h == f"www.{d}" or h.endswith(f".{d}"):
            return True
    return False


@dataclasses.dataclass(frozen=True)
class BlockRuleSet:
    website_domains: FrozenSet[str] = frozenset()
    application_identifiers: FrozenSet[str] = frozenset()
    entire_internet_blocked: bool = False
    allowed_domains: FrozenSet[str] = frozenset()

    @classmethod
    def create(
        cls,
        domains: Iterable[str] = (),
        apps: Iterable[str] = (),
        entire_internet_blocked: bool = False,
        allowed_domains: Iterable[str] = (),
    ) -> "BlockRuleSet":
        return cls(
            website_domains=normalize_domains(domains),
            application_identifiers=frozenset(a.strip() for a in apps if a.strip()),
            entire_internet_blocked=entire_internet_blocked,
            allowed_domains=normalize_domains(allowed_domains),
        )

    def should_block(self, host: str) -> bool:
        if self.entire_internet_blocked:
            return not host_matches(host, self.allowed_domains)
        return host_matches(host, self.website_domains)

    @property
    def is_empty(self) -> bool:
        return not (self.website_domains or self.application_identifiers or self.entire_internet_blocked)


class BlockingState(enum.Enum):
    INACTIVE = "inactive"
    ACTIVATING = "activating"
    ACTIVE = "active"
    DISABLING = "disabling"
    DEGRADED = "degraded"
    ERROR = "error"


@dataclasses.dataclass(frozen=True)
class BlockingStatus:
    state: BlockingState = BlockingState.INACTIVE
    reason: Optional[str] = None

    @property
    def is_enforcing(self) -> bool:
        return self.state in (BlockingState.ACTIVE, BlockingState.DEGRADED)

    @property
    def is_busy(self) -> bool:
        return self.state in (BlockingState.ACTIVATING, BlockingState.DISABLING)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.state.value} ({self.reason})"
        return self.state.value


@dataclasses.dataclass(frozen=True)
class HostsBackup:
    original_content: bytes
    captured_at: dt.datetime


@dataclasses.dataclass(frozen=True)
class SharedConfigRecord:
    """Desired block configuration as seen by every filtering context."""

    domains: List[str] = dataclasses.field(default_factory=list)
    enabled: bool = False
    updated_at: Optional[dt.datetime] = None
    allowed_domains: List[str] = dataclasses.field(default_factory=list)
    entire_internet_blocked: bool = False
    revision: int = 0

    @classmethod
    def from_rule_set(cls, rules: BlockRuleSet, enabled: bool = True) -> "SharedConfigRecord":
        return cls(
            domains=sorted(rules.website_domains),
            enabled=enabled,
            updated_at=now_utc(),
            allowed_domains=sorted(rules.allowed_domains),
            entire_internet_blocked=rules.entire_internet_blocked,
        )

    def to_rule_set(self) -> BlockRuleSet:
        return BlockRuleSet.create(
            self.domains,
            entire_internet_blocked=self.entire_internet_blocked,
            allowed_domains=self.allowed_domains,
        )

    def age(self, now: Optional[dt.datetime] = None) -> Optional[float]:
        if self.updated_at is None:
            return None
        now = now or now_utc()
        return (now - self.updated_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "domains": list(self.domains),
            "enabled": self.enabled,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "allowedDomains": list(self.allowed_domains),
            "entireInternetBlocked": self.entire_internet_blocked,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SharedConfigRecord":
        updated_at = None
        raw = data.get("updatedAt")
        if raw:
            updated_at = dt.datetime.fromisoformat(raw)
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=dt.timezone.utc)
        domains = data.get("domains") or []
        allowed = data.get("allowedDomains") or []
        if not isinstance(domains, list) or not isinstance(allowed, list):
            raise ValueError("domains must be a list")
        return cls(
            domains=[str(d) for d in domains],
            enabled=bool(data.get("enabled", False)),
            updated_at=updated_at,
            allowed_domains=[str(d) for d in allowed],
            entire_internet_blocked=bool(data.get("entireInternetBlocked", False)),
            revision=int(data.get("revision", 0)),
        )
