import base64
import inspect
import json
import logging
import re
import ssl
import time
from dataclasses import dataclass, field
from http.cookiejar import CookieJar
from typing import Any, List, Optional, Tuple, Union

import httpx

from .config import RequestConfig, StreamingBody
from .deadline import CancellationSignal, ExecutionContext, deadline_scope, resolve
from .errors import (
    CurlRunnerError,
    ExecutionError,
    HTTPStatusError,
    ProxyConfigError,
    RedirectLoopExceeded,
    RequestConnectionError,
    ResponseTooLarge,
    TLSConfigError,
    redact_headers,
    sanitize_url,
)
from .files import load_cookie_file, read_file
from .metrics import RequestMetrics, TraceRecorder
from .proxy import build_transport
from .retry import RetryController
from .settings import RunnerSettings
from .tls import TLSMaterial, build_ssl_context, load_tls_material
from .validation import ValidationLimits, validate


logger = logging.getLogger(__name__)

CookieSource = Union[httpx.Cookies, CookieJar, None]

_CHARSET_RE = re.compile(r"charset=([\w.\-:]+)", re.IGNORECASE)


# ----------------------------
# Response
# ----------------------------

@dataclass
class Response:
    status_code: int
    headers: httpx.Headers
    content: bytes
    url: str
    http_version: str
    elapsed_ms: int
    attempts: int
    redirects: int
    request: dict[str, Any]
    cookies: httpx.Cookies = field(default_factory=httpx.Cookies, repr=False)
    metrics: Optional[RequestMetrics] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def encoding(self) -> str:
        m = _CHARSET_RE.search(self.headers.get("content-type", ""))
        return m.group(1) if m else "utf-8"

    @property
    def text(self) -> str:
        try:
            return self.content.decode(self.encoding, errors="replace")
        except LookupError:
            return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)

    def raise_for_status(self) -> "Response":
        if self.status_code >= 400:
            raise HTTPStatusError(self.status_code, url=self.url)
        return self


# ----------------------------
# Request assembly
# ----------------------------

class _BorrowedTransport(httpx.AsyncBaseTransport):
    """Caller-owned transport: used as-is, never closed by us."""

    def __init__(self, inner: httpx.AsyncBaseTransport):
        self._inner = inner

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self._inner.handle_async_request(request)

    async def aclose(self) -> None:
        return None


def _auth_headers(cfg: RequestConfig) -> List[Tuple[str, str]]:
    """
    Credentials become plain Authorization headers so that httpx strips
    them on cross-origin redirects. An explicit -H Authorization wins,
    then a bearer token, then basic auth.
    """
    if cfg.header("Authorization") is not None:
        return []
    if cfg.bearer_token is not None:
        return [("Authorization", f"Bearer {cfg.bearer_token}")]
    if cfg.basic_auth is not None:
        raw = f"{cfg.basic_auth.username}:{cfg.basic_auth.password}".encode("utf-8")
        return [("Authorization", "Basic " + base64.b64encode(raw).decode("ascii"))]
    return []


def _request_headers(cfg: RequestConfig, settings: RunnerSettings) -> List[Tuple[str, str]]:
    headers: List[Tuple[str, str]] = []
    if cfg.header("User-Agent") is None:
        headers.append(("User-Agent", settings.user_agent))
    if cfg.header("Accept") is None:
        headers.append(("Accept", "*/*"))
    if cfg.header("Accept-Encoding") is None:
        headers.append(("Accept-Encoding", "gzip, deflate, br" if cfg.compressed else "identity"))
    if cfg.body is not None and not cfg.form and cfg.header("Content-Type") is None:
        headers.append(("Content-Type", "application/x-www-form-urlencoded"))
    if cfg.request_id is None:
        headers.extend(cfg.headers)
    else:
        headers.extend((k, v) for k, v in cfg.headers if k.lower() != "x-request-id")
        headers.append(("X-Request-ID", cfg.request_id))
    headers.extend(_auth_headers(cfg))
    return headers


async def _apply_middleware(cfg: RequestConfig, request: httpx.Request, *, url: str) -> httpx.Request:
    """Run the config's hooks in order; each returns the request to send."""
    for hook in cfg.middleware:
        name = getattr(hook, "__name__", type(hook).__name__)
        try:
            result = hook(request)
            if inspect.isawaitable(result):
                result = await result
        except CurlRunnerError:
            raise
        except Exception as e:
            raise ExecutionError(f"middleware {name} failed: {e}", url=url, field="middleware") from e
        if not isinstance(result, httpx.Request):
            raise ExecutionError(
                f"middleware {name} returned {type(result).__name__}, expected httpx.Request",
                url=url,
                field="middleware",
            )
        request = result
    return request


def _request_body(cfg: RequestConfig) -> dict[str, Any]:
    """httpx keyword arguments for the body. File-like bodies are read once."""
    if cfg.form:
        parts = []
        for f in cfg.form:
            if f.is_file:
                data = read_file(f.value, field="form")
                filename = f.value.replace("\\", "/").rsplit("/", 1)[-1]
                parts.append((f.name, (filename, data)))
            else:
                parts.append((f.name, (None, f.value.encode("utf-8"))))
        return {"files": parts}

    body = cfg.body
    if body is None:
        return {}
    if isinstance(body, bytes):
        return {"content": body}
    if isinstance(body, StreamingBody):
        return {"content": body.source}
    if hasattr(body, "read"):
        data = body.read()
        return {"content": data.encode("utf-8") if isinstance(data, str) else bytes(data)}
    raise ExecutionError(f"unsupported body type {type(body).__name__}", field="body")


def _build_cookies(cfg: RequestConfig, cookies: CookieSource) -> httpx.Cookies:
    if isinstance(cookies, httpx.Cookies):
        jar = httpx.Cookies(cookies.jar)  # shares the underlying jar
    elif isinstance(cookies, CookieJar):
        jar = httpx.Cookies(cookies)
    else:
        jar = httpx.Cookies()

    if cfg.cookie_file:
        load_cookie_file(cfg.cookie_file, jar.jar)

    if cfg.cookies:
        host = httpx.URL(cfg.url).host
        for name, value in cfg.cookies:
            jar.set(name, value, domain=host)
    return jar


def summarize_request(cfg: RequestConfig, headers: List[Tuple[str, str]]) -> dict[str, Any]:
    """Diagnostic view of the outbound request. Secrets are redacted."""
    return {
        "method": cfg.effective_method,
        "url": sanitize_url(cfg.url),
        "headers": redact_headers(headers),
        "query": len(cfg.query),
        "has_body": cfg.body is not None,
        "form_fields": len(cfg.form),
        "proxy": sanitize_url(cfg.proxy.url) if cfg.proxy else None,
        "has_auth": cfg.basic_auth is not None or cfg.bearer_token is not None,
    }


# ----------------------------
# Sending
# ----------------------------

def _ssl_cause(exc: BaseException) -> Optional[ssl.SSLError]:
    seen = set()
    cur: Optional[BaseException] = exc
    while cur is not None and id(cur) not in seen:
        if isinstance(cur, ssl.SSLError):
            return cur
        seen.add(id(cur))
        cur = cur.__cause__ or cur.__context__
    return None


async def _send_once(client: httpx.AsyncClient, request: httpx.Request, *, url: str) -> httpx.Response:
    try:
        return await client.send(request, stream=True, follow_redirects=False)
    except httpx.ProxyError as e:
        raise ProxyConfigError(f"proxy failure: {e}", url=url, field="proxy") from e
    except httpx.UnsupportedProtocol as e:
        raise ExecutionError(f"unsupported protocol: {e}", url=url, field="url") from e
    except httpx.TransportError as e:
        tls_err = _ssl_cause(e)
        if tls_err is not None:
            raise TLSConfigError(f"TLS handshake failed: {tls_err}", url=url, field="tls") from e
        raise RequestConnectionError(f"{type(e).__name__}: {e}", url=url) from e
    except httpx.StreamError as e:
        raise ExecutionError(f"request body cannot be sent again: {e}", url=url, field="body") from e


async def _read_body(response: httpx.Response, cap: int, *, url: str) -> bytes:
    """Read the body, failing as soon as more than `cap` bytes arrive."""
    try:
        if cap:
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > cap:
                raise ResponseTooLarge(cap, url=url)

        chunks: List[bytes] = []
        total = 0
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if cap and total > cap:
                raise ResponseTooLarge(cap, url=url)
            chunks.append(chunk)
        return b"".join(chunks)
    except httpx.TransportError as e:
        raise RequestConnectionError(f"error reading response body: {e}", url=url) from e
    finally:
        await response.aclose()


async def _execute(
    cfg: RequestConfig,
    ctx: ExecutionContext,
    client: httpx.AsyncClient,
    *,
    settings: RunnerSettings,
) -> Response:
    url = sanitize_url(cfg.url) or ""
    headers = _request_headers(cfg, settings)
    summary = summarize_request(cfg, headers)

    level = logging.INFO if cfg.verbose else logging.DEBUG
    logger.log(level, "> %s %s", summary["method"], summary["url"])
    for k, v in summary["headers"]:
        logger.log(level, "> %s: %s", k, v)

    recorder = TraceRecorder()
    extensions: dict[str, Any] = {"trace": recorder.trace}
    if cfg.tls.sni_hostname:
        extensions["sni_hostname"] = cfg.tls.sni_hostname

    request = client.build_request(
        cfg.effective_method,
        cfg.url,
        params=list(cfg.query) or None,
        headers=headers,
        extensions=extensions,
        **_request_body(cfg),
    )
    request = await _apply_middleware(cfg, request, url=url)

    controller = RetryController(
        cfg.retry,
        ctx,
        replayable=cfg.body_replayable,
        label=f"{cfg.effective_method} {url}",
    )

    metrics = RequestMetrics(start_time=time.time())
    t0 = time.monotonic()
    hops = 0
    while True:
        current = request
        response = await controller.run(lambda: _send_once(client, current, url=url))

        next_request = response.next_request
        if not cfg.redirects.follow or next_request is None:
            break

        await response.aclose()
        if hops >= cfg.redirects.max_hops:
            raise RedirectLoopExceeded(cfg.redirects.max_hops, url=url)
        hops += 1
        logger.log(level, "following redirect %s -> %s", response.status_code, sanitize_url(str(next_request.url)))
        # extensions are shared with the previous request; SNI override only
        # applies while we stay on the original host
        next_request.extensions = {k: v for k, v in next_request.extensions.items() if k != "sni_hostname"}
        if cfg.tls.sni_hostname and next_request.url.host == httpx.URL(cfg.url).host:
            next_request.extensions["sni_hostname"] = cfg.tls.sni_hostname
        request = next_request

    content = await _read_body(response, cfg.max_response_bytes, url=url)
    metrics.duration = time.monotonic() - t0
    metrics.attempts = ctx.attempt
    metrics.redirects = hops
    metrics.response_size = len(content)
    recorder.apply(metrics)
    elapsed_ms = int(metrics.duration * 1000)
    logger.log(level, "< HTTP %s %s (%s bytes, %s ms)", response.http_version, response.status_code, len(content), elapsed_ms)

    return Response(
        status_code=response.status_code,
        headers=httpx.Headers(response.headers),
        content=content,
        url=str(response.request.url),
        http_version=response.http_version,
        elapsed_ms=elapsed_ms,
        attempts=ctx.attempt,
        redirects=hops,
        request=summary,
        cookies=client.cookies,
        metrics=metrics,
    )


async def execute(
    cfg: RequestConfig,
    signal: Optional[CancellationSignal] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    cookies: CookieSource = None,
    settings: Optional[RunnerSettings] = None,
    tls_material: Optional[TLSMaterial] = None,
    limits: Optional[ValidationLimits] = None,
) -> Response:
    """
    Validate and execute a RequestConfig.

    - the config is checked again here, so clones and hand-built configs
      get the same plaintext-credential and size checks as parsed ones;
      `limits` defaults to the ones derived from `settings`
    - one effective deadline: the caller's signal deadline, else cfg.timeout,
      else settings.default_timeout; the transport only gets a connect timeout
    - `transport` replaces the default httpx transport verbatim (TLS, proxy
      and certificate pins are then the transport's business); retries,
      deadlines and redirects behave the same
    - `cookies` is shared: Set-Cookie responses land in the caller's jar
    """
    settings = settings or RunnerSettings()
    validate(cfg, limits or ValidationLimits.from_settings(settings))

    ctx = ExecutionContext(
        deadline=resolve(signal, cfg.timeout or settings.default_timeout),
        signal=signal,
        url=sanitize_url(cfg.url),
    )

    async with deadline_scope(ctx):
        if transport is None:
            material = tls_material if tls_material is not None else load_tls_material(cfg.tls)
            ssl_context = build_ssl_context(cfg.tls, material)
            active_transport = build_transport(
                cfg.proxy,
                ssl_context,
                http2=cfg.http2,
                pins=cfg.tls.pinned_fingerprints,
            )
        else:
            active_transport = _BorrowedTransport(transport)

        client = httpx.AsyncClient(
            transport=active_transport,
            cookies=_build_cookies(cfg, cookies).jar,
            timeout=httpx.Timeout(None, connect=cfg.connect_timeout or None),
            follow_redirects=False,
            trust_env=False,
        )
        try:
            return await _execute(cfg, ctx, client, settings=settings)
        finally:
            await client.aclose()
