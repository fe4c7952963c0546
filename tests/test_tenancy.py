"""Tests for host-based tenant resolution."""

import pytest

from hivehr.service.tenancy import TenantResolver, is_local_host, strip_port
from hivehr.storage.errors import StoreUnavailable


@pytest.fixture
def resolver(memory_store, settings):
    return TenantResolver(memory_store, settings)


@pytest.fixture
def acme(memory_store):
    return memory_store.create_tenant("Acme Inc", "acme")


class TestExtractSubdomain:
    """Host header parsing."""

    @pytest.mark.parametrize(
        "host,expected",
        [
            ("acme.example.com", "acme"),
            ("ACME.Example.COM", "acme"),
            ("acme.example.com:8443", "acme"),
            ("example.com", None),
            ("example.com:443", None),
            ("www.example.com", None),
            ("api.example.com", None),
            ("localhost", None),
            ("localhost:3000", None),
            ("127.0.0.1", None),
            ("10.0.0.5:8000", None),
            ("[::1]:8000", None),
            ("acme.other.org", None),
            ("a.b.example.com", None),
            ("www.acme.example.com", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, resolver, host, expected):
        assert resolver.extract_subdomain(host) == expected

    def test_strip_port_keeps_ipv6(self):
        assert strip_port("[::1]:8000") == "::1"
        assert strip_port("acme.example.com:80") == "acme.example.com"

    def test_local_hosts(self):
        assert is_local_host("localhost")
        assert is_local_host("192.168.1.10:80")
        assert not is_local_host("acme.example.com")


class TestResolve:
    """Host to tenant lookups."""

    def test_resolves_known_tenant(self, resolver, acme):
        tenant = resolver.resolve("acme.example.com")
        assert tenant is not None
        assert tenant.id == acme.id

    def test_resolution_is_case_insensitive(self, resolver, acme):
        upper = resolver.resolve("ACME.example.com")
        lower = resolver.resolve("acme.example.com")
        assert upper is not None and lower is not None
        assert upper.id == lower.id == acme.id

    def test_unknown_subdomain(self, resolver, acme):
        assert resolver.resolve("globex.example.com") is None

    def test_root_domain_has_no_tenant(self, resolver, acme):
        assert resolver.resolve("example.com") is None

    def test_resolve_domain_normalizes(self, resolver, acme):
        assert resolver.resolve_domain("  Acme ").id == acme.id
        assert resolver.resolve_domain("") is None
        assert resolver.resolve_domain("www") is None

    def test_store_failure_downgrades_to_none(self, settings):
        class FailingStore:
            def get_tenant_by_subdomain(self, subdomain):
                raise StoreUnavailable("database unavailable")

        resolver = TenantResolver(FailingStore(), settings)
        assert resolver.resolve("acme.example.com") is None
