from __future__ import annotations

import ipaddress
import re
from typing import Optional

from hivehr.config import Settings
from hivehr.logging import get_logger
from hivehr.storage.common import normalize_subdomain
from hivehr.storage.errors import StoreUnavailable
from hivehr.storage.models import Tenant

logger = get_logger(__name__)

RESERVED_SUBDOMAINS = frozenset({"www", "api"})
_LOCAL_HOSTNAMES = frozenset({"localhost"})


def strip_port(host: str) -> str:
    """Drop a trailing ``:port`` from a host header, keeping IPv6 literals intact."""
    host = (host or "").strip().lower()
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else host
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def is_local_host(hostname: str) -> bool:
    """True for localhost and loopback or private IP literals."""
    hostname = strip_port(hostname)
    if hostname in _LOCAL_HOSTNAMES or hostname.endswith(".localhost"):
        return True
    try:
        addr = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return addr.is_loopback or addr.is_private


def _is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True


class TenantResolver:
    """Maps an inbound host header to the tenant that owns its subdomain."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pattern = re.compile(rf"^([^.]+)\.{re.escape(settings.root_domain)}$")

    def extract_subdomain(self, host: Optional[str]) -> Optional[str]:
        hostname = strip_port(host or "")
        if not hostname or hostname == self.settings.root_domain:
            return None
        if hostname in _LOCAL_HOSTNAMES or _is_ip_literal(hostname):
            return None
        match = self._pattern.match(hostname)
        if not match:
            return None
        subdomain = match.group(1)
        if subdomain in RESERVED_SUBDOMAINS:
            return None
        return subdomain

    def resolve(self, host: Optional[str]) -> Optional[Tenant]:
        subdomain = self.extract_subdomain(host)
        if subdomain is None:
            return None
        return self.resolve_domain(subdomain)

    def resolve_domain(self, tenant_domain: Optional[str]) -> Optional[Tenant]:
        """Look up a tenant by an explicitly supplied subdomain."""
        if not tenant_domain or not tenant_domain.strip():
            return None
        subdomain = normalize_subdomain(tenant_domain)
        if subdomain in RESERVED_SUBDOMAINS:
            return None
        try:
            return self.store.get_tenant_by_subdomain(subdomain)
        except StoreUnavailable as exc:
            logger.error("tenant_lookup_failed", subdomain=subdomain, error=str(exc))
            return None
