import httpx
import pytest

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from tooling.curl_runner import ProxyConfigError, ProxySpec
from tooling.curl_runner.proxy import ProxyBypass, ProxyRoutingTransport, build_transport
from tooling.curl_runner.tls import build_ssl_context
from tooling.curl_runner.config import TLSSpec


# ----------------------------
# Bypass list
# ----------------------------

def test_empty_bypass_matches_nothing():
    bypass = ProxyBypass([])
    assert not bypass
    assert bypass.matches("example.com", 443) is False


def test_wildcard_matches_everything():
    assert ProxyBypass(["*"]).matches("anything.test", 80)


@pytest.mark.parametrize("pattern", ["example.com", ".example.com", "EXAMPLE.com."])
def test_domain_patterns_match_host_and_subdomains(pattern):
    bypass = ProxyBypass([pattern])
    assert bypass.matches("example.com", 443)
    assert bypass.matches("api.example.com", 443)
    assert not bypass.matches("notexample.com", 443)
    assert not bypass.matches("example.com.evil.test", 443)


def test_cidr_patterns():
    bypass = ProxyBypass(["10.0.0.0/8", "fd00::/8"])
    assert bypass.matches("10.1.2.3", 80)
    assert not bypass.matches("11.0.0.1", 80)
    assert bypass.matches("[fd00::1]", 80)
    # hostnames never match a network
    assert not bypass.matches("ten.example", 80)


def test_ip_literals():
    bypass = ProxyBypass(["127.0.0.1", "::1"])
    assert bypass.matches("127.0.0.1", 80)
    assert bypass.matches("::1", 80)
    assert not bypass.matches("127.0.0.2", 80)


def test_port_specific_patterns():
    bypass = ProxyBypass(["localhost:8080", "[::1]:9000"])
    assert bypass.matches("localhost", 8080)
    assert not bypass.matches("localhost", 80)
    assert bypass.matches("::1", 9000)
    assert not bypass.matches("::1", 80)


def test_invalid_cidr():
    with pytest.raises(ProxyConfigError):
        ProxyBypass(["10.0.0.0/99"])


# ----------------------------
# Routing transport
# ----------------------------

def _tagged(tag: str):
    def handler(request):
        return httpx.Response(200, text=tag)
    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_routing_transport_picks_direct_for_bypassed_hosts():
    transport = ProxyRoutingTransport(_tagged("proxied"), _tagged("direct"), ProxyBypass(["internal.test"]))

    async with httpx.AsyncClient(transport=transport) as client:
        assert (await client.get("https://api.internal.test/x")).text == "direct"
        assert (await client.get("https://public.test/x")).text == "proxied"


@pytest.mark.asyncio
async def test_routing_transport_uses_default_ports():
    transport = ProxyRoutingTransport(_tagged("proxied"), _tagged("direct"), ProxyBypass(["svc.test:443"]))

    async with httpx.AsyncClient(transport=transport) as client:
        assert (await client.get("https://svc.test/")).text == "direct"
        assert (await client.get("http://svc.test/")).text == "proxied"


@pytest.mark.asyncio
async def test_routing_transport_closes_both_sides():
    closed = []

    class Tracking(httpx.MockTransport):
        def __init__(self, name):
            super().__init__(lambda request: httpx.Response(200))
            self.name = name

        async def aclose(self):
            closed.append(self.name)

    transport = ProxyRoutingTransport(Tracking("proxied"), Tracking("direct"), ProxyBypass(["*"]))
    await transport.aclose()
    assert closed == ["proxied", "direct"]


# ----------------------------
# build_transport()
# ----------------------------

@pytest.fixture(scope="module")
def ssl_context():
    return build_ssl_context(TLSSpec())


def test_no_proxy_gives_plain_transport(ssl_context):
    assert isinstance(build_transport(None, ssl_context), httpx.AsyncHTTPTransport)


def test_proxy_without_bypass(ssl_context):
    t = build_transport(ProxySpec("http://proxy.test:3128"), ssl_context)
    assert isinstance(t, httpx.AsyncHTTPTransport)


def test_proxy_with_bypass_routes(ssl_context):
    t = build_transport(ProxySpec("http://proxy.test:3128", ("localhost", "10.0.0.0/8")), ssl_context)
    assert isinstance(t, ProxyRoutingTransport)
    assert t.route(httpx.URL("http://localhost/")) is not t.route(httpx.URL("https://example.com/"))


def test_invalid_bypass_entry_surfaces_as_proxy_error(ssl_context):
    with pytest.raises(ProxyConfigError):
        build_transport(ProxySpec("http://proxy.test:3128", ("300.0.0.0/8",)), ssl_context)
