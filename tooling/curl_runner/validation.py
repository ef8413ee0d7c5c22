import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from .config import RequestConfig, StreamingBody
from .errors import ValidationError
from .settings import RunnerSettings


ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "CONNECT", "TRACE"})
FORBIDDEN_HEADERS = frozenset({"host", "content-length", "transfer-encoding"})

# RFC 7230 token
_HEADER_NAME_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


@dataclass(frozen=True)
class ValidationLimits:
    max_url_bytes: int = 8192
    max_headers: int = 100
    max_header_bytes: int = 8192
    max_body_bytes: int = 10 * 1024 * 1024
    max_form_fields: int = 1000
    max_query_params: int = 1000
    allow_insecure_auth: bool = False

    @classmethod
    def from_settings(cls, settings: RunnerSettings) -> "ValidationLimits":
        return cls(
            max_url_bytes=settings.max_url_bytes,
            max_headers=settings.max_headers,
            max_header_bytes=settings.max_header_bytes,
            max_body_bytes=settings.max_body_bytes,
            max_form_fields=settings.max_form_fields,
            max_query_params=settings.max_query_params,
            allow_insecure_auth=settings.allow_insecure_auth,
        )


def _has_credentials(cfg: RequestConfig) -> bool:
    if cfg.basic_auth is not None or cfg.bearer_token is not None:
        return True
    return cfg.header("Authorization") is not None


def validate(
    cfg: RequestConfig,
    limits: Optional[ValidationLimits] = None,
    *,
    allow_insecure_auth: Optional[bool] = None,
) -> RequestConfig:
    """
    Check structural and security invariants before execution.

    Returns the same (unmodified) config, or raises ValidationError naming
    the offending field. Checks run in a fixed order so the first problem
    reported is deterministic.
    """
    limits = limits or ValidationLimits()
    if allow_insecure_auth is None:
        allow_insecure_auth = limits.allow_insecure_auth

    url = cfg.url

    # method
    method = cfg.effective_method
    if method not in ALLOWED_METHODS:
        raise ValidationError("method", f"unsupported HTTP method {method!r}", url=url)

    # url
    if not url:
        raise ValidationError("url", "URL is empty")
    if len(url.encode("utf-8")) > limits.max_url_bytes:
        raise ValidationError("url", f"URL longer than {limits.max_url_bytes} bytes")
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise ValidationError("url", f"unparseable URL: {e}") from None
    if parts.scheme.lower() not in ("http", "https"):
        raise ValidationError("url", f"unsupported scheme {parts.scheme!r}", url=url)
    if not parts.hostname:
        raise ValidationError("url", "URL has no host", url=url)

    # headers
    if len(cfg.headers) > limits.max_headers:
        raise ValidationError("headers", f"more than {limits.max_headers} headers", url=url)
    for name, value in cfg.headers:
        if not _HEADER_NAME_RE.match(name):
            raise ValidationError("headers", f"invalid header name {name!r}", url=url)
        if "\r" in value or "\n" in value:
            raise ValidationError("headers", f"header {name!r} contains a line break", url=url)
        if name.lower() in FORBIDDEN_HEADERS:
            raise ValidationError("headers", f"header {name!r} cannot be set manually", url=url)
        size = len(f"{name}: {value}".encode("utf-8"))
        if size > limits.max_header_bytes:
            raise ValidationError(
                "headers",
                f"header {name!r} is {size} bytes, limit is {limits.max_header_bytes}",
                url=url,
            )

    if cfg.request_id is not None:
        if not cfg.request_id or "\r" in cfg.request_id or "\n" in cfg.request_id:
            raise ValidationError("request_id", "request id must be a non-empty single line", url=url)

    for hook in cfg.middleware:
        if not callable(hook):
            raise ValidationError("middleware", f"middleware {hook!r} is not callable", url=url)

    # body
    if isinstance(cfg.body, bytes) and len(cfg.body) > limits.max_body_bytes:
        raise ValidationError("body", f"body larger than {limits.max_body_bytes} bytes", url=url)
    if cfg.body is not None and cfg.form:
        raise ValidationError("form", "form fields cannot be combined with a request body", url=url)
    if cfg.body is not None and not isinstance(cfg.body, (bytes, StreamingBody)) and not hasattr(cfg.body, "read"):
        raise ValidationError("body", f"unsupported body type {type(cfg.body).__name__}", url=url)

    if len(cfg.form) > limits.max_form_fields:
        raise ValidationError("form", f"more than {limits.max_form_fields} form fields", url=url)
    if len(cfg.query) > limits.max_query_params:
        raise ValidationError("query", f"more than {limits.max_query_params} query parameters", url=url)

    # credentials over plaintext
    if parts.scheme.lower() == "http" and _has_credentials(cfg) and not allow_insecure_auth:
        raise ValidationError(
            "auth",
            "refusing to send credentials over plain http (allow_insecure_auth to override)",
            url=url,
        )

    # numeric bounds
    if cfg.timeout < 0:
        raise ValidationError("timeout", "negative timeout", url=url)
    if cfg.connect_timeout < 0:
        raise ValidationError("connect_timeout", "negative connect timeout", url=url)
    if cfg.redirects.max_hops < 0:
        raise ValidationError("redirects.max_hops", "negative max redirects", url=url)
    if cfg.max_response_bytes < 0:
        raise ValidationError("max_response_bytes", "negative response size cap", url=url)

    # tls
    tls = cfg.tls
    if tls.key_path and not tls.cert_path:
        raise ValidationError("tls.key_path", "client key given without a client certificate", url=url)
    if tls.min_version not in (None, "1.2", "1.3"):
        raise ValidationError("tls.min_version", f"unsupported TLS version {tls.min_version!r}", url=url)

    # proxy
    if cfg.proxy is not None:
        scheme = urlsplit(cfg.proxy.url).scheme.lower()
        if scheme not in ("http", "https", "socks5", "socks5h"):
            raise ValidationError("proxy", f"unsupported proxy scheme {scheme!r}", url=url)

    return cfg
