import ipaddress
import logging
import ssl
from typing import Optional, Sequence, Tuple

import httpx

from .config import ProxySpec
from .errors import ProxyConfigError, sanitize_url
from .tls import pin_transport


logger = logging.getLogger(__name__)


# ----------------------------
# Bypass list
# ----------------------------

def _split_host_port(pattern: str) -> Tuple[str, Optional[int]]:
    """'host', 'host:8080', '[::1]:8080', '::1' -> (host, port)."""
    if pattern.startswith("["):
        end = pattern.find("]")
        if end > 0:
            host = pattern[1:end]
            rest = pattern[end + 1:]
            if rest.startswith(":") and rest[1:].isdigit():
                return host, int(rest[1:])
            return host, None
    if pattern.count(":") == 1:
        host, port = pattern.split(":", 1)
        if port.isdigit():
            return host, int(port)
    return pattern, None


def _as_ip(host: str):
    try:
        return ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return None


class ProxyBypass:
    """
    curl/NO_PROXY style bypass list.

    Pattern forms:
      - "*"                 everything
      - "example.com"       the host and all of its subdomains
      - ".example.com"      same as above
      - "10.0.0.0/8"        any IP literal inside the network
      - "192.168.1.10"      that IP literal
      - "host:8080"         the host on that port only
    """

    def __init__(self, patterns: Sequence[str] = ()):
        self._match_all = False
        self._networks = []
        self._hosts: list[Tuple[str, Optional[int]]] = []

        for raw in patterns:
            p = raw.strip().lower()
            if not p:
                continue
            if p == "*":
                self._match_all = True
                continue
            if "/" in p:
                try:
                    self._networks.append(ipaddress.ip_network(p, strict=False))
                except ValueError:
                    raise ProxyConfigError(f"invalid CIDR in bypass list: {raw!r}", field="proxy.no_proxy") from None
                continue
            host, port = _split_host_port(p)
            self._hosts.append((host.lstrip(".").rstrip("."), port))

    def __bool__(self) -> bool:
        return self._match_all or bool(self._networks) or bool(self._hosts)

    def matches(self, host: str, port: Optional[int] = None) -> bool:
        if self._match_all:
            return True

        host = host.strip("[]").rstrip(".").lower()
        ip = _as_ip(host)

        if ip is not None:
            for net in self._networks:
                if ip.version == net.version and ip in net:
                    return True

        for pattern, pattern_port in self._hosts:
            if pattern_port is not None and pattern_port != port:
                continue
            if ip is not None:
                pattern_ip = _as_ip(pattern)
                if pattern_ip is not None and pattern_ip == ip:
                    return True
                continue
            if host == pattern or host.endswith("." + pattern):
                return True
        return False


# ----------------------------
# Transports
# ----------------------------

class ProxyRoutingTransport(httpx.AsyncBaseTransport):
    """
    Sends each request either through the proxy or directly, depending on
    the bypass list. Redirects to a bypassed host go direct, and back.
    """

    def __init__(
        self,
        proxied: httpx.AsyncBaseTransport,
        direct: httpx.AsyncBaseTransport,
        bypass: ProxyBypass,
    ):
        self._proxied = proxied
        self._direct = direct
        self._bypass = bypass

    def route(self, url: httpx.URL) -> httpx.AsyncBaseTransport:
        if self._bypass.matches(url.host, url.port or (443 if url.scheme == "https" else 80)):
            return self._direct
        return self._proxied

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        transport = self.route(request.url)
        if transport is self._direct:
            logger.debug("bypassing proxy for %s", request.url.host)
        return await transport.handle_async_request(request)

    async def aclose(self) -> None:
        try:
            await self._proxied.aclose()
        finally:
            await self._direct.aclose()


def build_transport(
    proxy: Optional[ProxySpec],
    ssl_context: ssl.SSLContext,
    *,
    http2: bool = False,
    pins: Sequence[str] = (),
) -> httpx.AsyncBaseTransport:
    """
    Default transport for one call: direct, proxied, or proxied with a
    bypass list. transport-level retries stay at 0; retrying belongs to
    RetryController.

    Certificate pins are checked during each origin TLS handshake. The TLS
    session with an https proxy itself is not pinned.
    """
    def direct() -> httpx.AsyncHTTPTransport:
        return pin_transport(httpx.AsyncHTTPTransport(verify=ssl_context, http2=http2, retries=0), pins)

    if proxy is None:
        return direct()

    try:
        proxied = httpx.AsyncHTTPTransport(
            verify=ssl_context,
            http2=http2,
            retries=0,
            proxy=httpx.Proxy(proxy.url),
        )
    except ImportError as e:
        raise ProxyConfigError(
            f"proxy {sanitize_url(proxy.url)} needs an optional dependency ({e.name or e}); "
            "install curl-runner[socks]",
            field="proxy",
        ) from e
    except ValueError as e:
        raise ProxyConfigError(f"invalid proxy {sanitize_url(proxy.url)}: {e}", field="proxy") from e

    proxy_url = httpx.URL(proxy.url)
    skip = (proxy_url.host,) if proxy_url.scheme == "https" else ()
    proxied = pin_transport(proxied, pins, skip)

    logger.debug("routing through proxy %s", sanitize_url(proxy.url))
    bypass = ProxyBypass(proxy.no_proxy)
    if not bypass:
        return proxied
    return ProxyRoutingTransport(proxied, direct(), bypass)
