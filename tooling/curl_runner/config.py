import base64
import dataclasses
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, FrozenSet, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError, REDACTED, is_sensitive_header


Pairs = Tuple[Tuple[str, str], ...]

DEFAULT_RETRYABLE_STATUSES: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})
DEFAULT_MAX_REDIRECTS = 50
DEFAULT_RETRY_BASE_DELAY = 0.1
DEFAULT_RETRY_MAX_DELAY = 5.0


def _freeze_pairs(pairs: Any) -> Pairs:
    if not pairs:
        return ()
    if isinstance(pairs, Mapping):
        pairs = pairs.items()
    return tuple((str(k), str(v)) for k, v in pairs)


# ----------------------------
# Component specs
# ----------------------------

@dataclass(frozen=True)
class BasicAuthSpec:
    username: str
    password: str


@dataclass(frozen=True)
class FormField:
    name: str
    value: str
    is_file: bool = False   # -F name=@path
    literal: bool = False   # --form-string


@dataclass(frozen=True)
class TLSSpec:
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    ca_path: Optional[str] = None
    pinned_fingerprints: Tuple[str, ...] = ()
    sni_hostname: Optional[str] = None
    insecure: bool = False
    min_version: Optional[str] = None  # "1.2" | "1.3"
    ciphers: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "pinned_fingerprints", tuple(self.pinned_fingerprints or ()))


@dataclass(frozen=True)
class ProxySpec:
    url: str
    no_proxy: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "no_proxy", tuple(self.no_proxy or ()))


@dataclass(frozen=True)
class RedirectPolicy:
    follow: bool = False
    max_hops: int = DEFAULT_MAX_REDIRECTS


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts counts the first try: 1 means no retries.
    Backoff before retry n (1-based) is min(max_delay, base_delay * 2**(n-1)).
    """
    max_attempts: int = 1
    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    max_delay: float = DEFAULT_RETRY_MAX_DELAY
    retryable_statuses: FrozenSet[int] = DEFAULT_RETRYABLE_STATUSES

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < 0:
            raise ValueError("max_delay must be >= 0")
        object.__setattr__(self, "retryable_statuses", frozenset(int(s) for s in self.retryable_statuses))

    @property
    def enabled(self) -> bool:
        return self.max_attempts > 1

    def backoff(self, retry_number: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** max(retry_number - 1, 0)))


@dataclass(frozen=True)
class StreamingBody:
    """
    Marks a body that can only be read once (async iterator of bytes).
    Requests carrying one are never retried.
    """
    source: AsyncIterable[bytes]
    replayable: bool = False


Body = Union[bytes, StreamingBody, Any, None]

# Middleware(request) -> request, sync or async
Middleware = Callable[[Any], Any]


# ----------------------------
# Request configuration
# ----------------------------

@dataclass(frozen=True)
class RequestConfig:
    method: str = ""
    url: str = ""
    headers: Pairs = ()
    body: Body = None
    form: Tuple[FormField, ...] = ()
    query: Pairs = ()

    basic_auth: Optional[BasicAuthSpec] = None
    bearer_token: Optional[str] = None

    tls: TLSSpec = field(default_factory=TLSSpec)
    proxy: Optional[ProxySpec] = None

    compressed: bool = False
    redirects: RedirectPolicy = field(default_factory=RedirectPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    timeout: float = 0.0
    connect_timeout: float = 0.0

    cookies: Pairs = ()
    cookie_file: Optional[str] = None
    cookie_jar_path: Optional[str] = None

    output_path: Optional[str] = None
    max_response_bytes: int = 0

    http2: bool = False
    verbose: bool = False
    silent: bool = False
    fail_on_error: bool = False

    request_id: Optional[str] = None
    # Hooks run in order on the outbound httpx.Request. They have no
    # command-line or snapshot form and take no part in equality.
    middleware: Tuple[Middleware, ...] = field(default=(), compare=False)

    def __post_init__(self):
        # Containers are frozen here so no caller-held list can alias them.
        object.__setattr__(self, "headers", _freeze_pairs(self.headers))
        object.__setattr__(self, "query", _freeze_pairs(self.query))
        object.__setattr__(self, "cookies", _freeze_pairs(self.cookies))
        object.__setattr__(self, "form", tuple(self.form or ()))
        object.__setattr__(self, "middleware", tuple(self.middleware or ()))
        if isinstance(self.body, str):
            object.__setattr__(self, "body", self.body.encode("utf-8"))
        elif isinstance(self.body, (bytearray, memoryview)):
            object.__setattr__(self, "body", bytes(self.body))

    # --- derived views ---

    @property
    def effective_method(self) -> str:
        if self.method:
            return self.method
        if self.body is not None or self.form:
            return "POST"
        return "GET"

    @property
    def body_replayable(self) -> bool:
        if isinstance(self.body, StreamingBody):
            return self.body.replayable
        return True

    def header(self, name: str) -> Optional[str]:
        lname = name.lower()
        for k, v in self.headers:
            if k.lower() == lname:
                return v
        return None

    def clone(self, **changes: Any) -> "RequestConfig":
        """
        Per-call variation of a shared config. The original is never touched.
        """
        return dataclasses.replace(self, **changes)

    def with_header(self, name: str, value: str) -> "RequestConfig":
        lname = name.lower()
        kept = tuple((k, v) for k, v in self.headers if k.lower() != lname)
        return self.clone(headers=kept + ((name, value),))

    def with_middleware(self, *hooks: Middleware) -> "RequestConfig":
        return self.clone(middleware=self.middleware + tuple(hooks))

    # --- canonical command ---

    def to_args(self) -> List[str]:
        """
        Canonical curl argument list. Converting it back yields an equal
        configuration (header order preserved). Literal "$" is written as
        "$$" so values survive placeholder expansion unchanged.
        """
        args: List[str] = []

        if self.method:
            args += ["-X", self.method]
        for k, v in self.headers:
            args += ["-H", f"{k}: {v}"]

        if isinstance(self.body, bytes):
            args += ["--data-binary", self.body.decode("utf-8", "surrogateescape")]
        elif self.body is not None:
            raise ValueError("only in-memory bodies have a command-line form")

        for f in self.form:
            if f.literal:
                args += ["--form-string", f"{f.name}={f.value}"]
            elif f.is_file:
                args += ["-F", f"{f.name}=@{f.value}"]
            else:
                args += ["-F", f"{f.name}={f.value}"]
        for k, v in self.query:
            args += ["--url-query", _query_arg(k, v)]

        if self.basic_auth is not None:
            args += ["-u", f"{self.basic_auth.username}:{self.basic_auth.password}"]
        if self.bearer_token is not None:
            args += ["--oauth2-bearer", self.bearer_token]

        tls = self.tls
        if tls.cert_path:
            args += ["--cert", tls.cert_path]
        if tls.key_path:
            args += ["--key", tls.key_path]
        if tls.ca_path:
            args += ["--cacert", tls.ca_path]
        for pin in tls.pinned_fingerprints:
            args += ["--pinnedpubkey", pin]
        if tls.sni_hostname:
            args += ["--sni-hostname", tls.sni_hostname]
        if tls.insecure:
            args.append("-k")
        if tls.min_version == "1.2":
            args.append("--tlsv1.2")
        elif tls.min_version == "1.3":
            args.append("--tlsv1.3")
        if tls.ciphers:
            args += ["--ciphers", tls.ciphers]

        if self.proxy is not None:
            args += ["-x", self.proxy.url]
            if self.proxy.no_proxy:
                args += ["--noproxy", ",".join(self.proxy.no_proxy)]

        if self.compressed:
            args.append("--compressed")
        if self.redirects.follow:
            args.append("-L")
        if self.redirects.max_hops != DEFAULT_MAX_REDIRECTS:
            args += ["--max-redirs", str(self.redirects.max_hops)]

        r = self.retry
        if r.max_attempts != 1:
            args += ["--retry", str(r.max_attempts - 1)]
        if r.base_delay != DEFAULT_RETRY_BASE_DELAY:
            args += ["--retry-delay", _num(r.base_delay)]
        if r.max_delay != DEFAULT_RETRY_MAX_DELAY:
            args += ["--retry-max-time", _num(r.max_delay)]
        if r.retryable_statuses != DEFAULT_RETRYABLE_STATUSES:
            args += ["--retry-status", ",".join(str(s) for s in sorted(r.retryable_statuses))]

        if self.timeout:
            args += ["-m", _num(self.timeout)]
        if self.connect_timeout:
            args += ["--connect-timeout", _num(self.connect_timeout)]

        if self.cookies:
            args += ["-b", "; ".join(f"{k}={v}" for k, v in self.cookies)]
        if self.cookie_file:
            args += ["-b", self.cookie_file]
        if self.cookie_jar_path:
            args += ["-c", self.cookie_jar_path]
        if self.output_path:
            args += ["-o", self.output_path]
        if self.max_response_bytes:
            args += ["--max-filesize", str(self.max_response_bytes)]

        if self.http2:
            args.append("--http2")
        if self.verbose:
            args.append("-v")
        if self.silent:
            args.append("-s")
        if self.fail_on_error:
            args.append("-f")
        if self.request_id:
            args += ["--request-id", self.request_id]

        if self.url:
            args.append(self.url)
        return [a.replace("$", "$$") for a in args]

    # --- persistence ---

    def to_dict(self, *, redact: bool = False) -> dict[str, Any]:
        """
        JSON-safe snapshot, rehydrated with RequestConfig.from_dict().
        With redact=True credentials and secret headers are masked
        (such a snapshot is for display only).
        """
        if isinstance(self.body, StreamingBody):
            raise ValueError("streaming bodies cannot be serialized")
        if self.body is not None and not isinstance(self.body, bytes):
            raise ValueError("file-like bodies cannot be serialized")

        body_text: Optional[str] = None
        body_base64: Optional[str] = None
        if isinstance(self.body, bytes):
            try:
                body_text = self.body.decode("utf-8")
            except UnicodeDecodeError:
                body_base64 = base64.b64encode(self.body).decode("ascii")

        def secret(v: Optional[str]) -> Optional[str]:
            if v is None or not redact:
                return v
            return REDACTED

        headers = [
            {"key": k, "value": REDACTED if redact and is_sensitive_header(k) else v}
            for k, v in self.headers
        ]

        return {
            "method": self.method,
            "url": self.url,
            "headers": headers,
            "body_text": body_text,
            "body_base64": body_base64,
            "form": [dataclasses.asdict(f) for f in self.form],
            "query": [{"key": k, "value": v} for k, v in self.query],
            "basic_auth_username": self.basic_auth.username if self.basic_auth else None,
            "basic_auth_password": secret(self.basic_auth.password) if self.basic_auth else None,
            "bearer_token": secret(self.bearer_token),
            "cert_path": self.tls.cert_path,
            "key_path": self.tls.key_path,
            "ca_path": self.tls.ca_path,
            "pinned_fingerprints": list(self.tls.pinned_fingerprints),
            "sni_hostname": self.tls.sni_hostname,
            "insecure": self.tls.insecure,
            "tls_min_version": self.tls.min_version,
            "ciphers": self.tls.ciphers,
            "proxy_url": self.proxy.url if self.proxy else None,
            "no_proxy": list(self.proxy.no_proxy) if self.proxy else [],
            "compressed": self.compressed,
            "follow_redirects": self.redirects.follow,
            "max_redirects": self.redirects.max_hops,
            "retry_max_attempts": self.retry.max_attempts,
            "retry_base_delay": self.retry.base_delay,
            "retry_max_delay": self.retry.max_delay,
            "retry_statuses": sorted(self.retry.retryable_statuses),
            "timeout": self.timeout,
            "connect_timeout": self.connect_timeout,
            "cookies": [{"key": k, "value": secret(v)} for k, v in self.cookies],
            "cookie_file": self.cookie_file,
            "cookie_jar_path": self.cookie_jar_path,
            "output_path": self.output_path,
            "max_response_bytes": self.max_response_bytes,
            "http2": self.http2,
            "verbose": self.verbose,
            "silent": self.silent,
            "fail_on_error": self.fail_on_error,
            "request_id": self.request_id,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "RequestConfig":
        """
        Deterministically rehydrate a snapshot produced by to_dict().
        Unknown keys are rejected.
        """
        try:
            snap = ConfigSnapshot.model_validate(dict(d))
        except PydanticValidationError as ve:
            first = ve.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ())) or "snapshot"
            raise ValidationError(loc, first.get("msg", str(ve))) from ve

        body: Optional[bytes] = None
        if snap.body_base64 is not None:
            body = base64.b64decode(snap.body_base64)
        elif snap.body_text is not None:
            body = snap.body_text.encode("utf-8")

        auth = None
        if snap.basic_auth_username is not None:
            auth = BasicAuthSpec(snap.basic_auth_username, snap.basic_auth_password or "")

        proxy = ProxySpec(snap.proxy_url, tuple(snap.no_proxy)) if snap.proxy_url else None

        try:
            retry = RetryPolicy(
                max_attempts=snap.retry_max_attempts,
                base_delay=snap.retry_base_delay,
                max_delay=snap.retry_max_delay,
                retryable_statuses=frozenset(snap.retry_statuses),
            )
        except ValueError as e:
            raise ValidationError("retry", str(e)) from e

        return cls(
            method=snap.method,
            url=snap.url,
            headers=tuple((p.key, p.value) for p in snap.headers),
            body=body,
            form=tuple(FormField(**f.model_dump()) for f in snap.form),
            query=tuple((p.key, p.value) for p in snap.query),
            basic_auth=auth,
            bearer_token=snap.bearer_token,
            tls=TLSSpec(
                cert_path=snap.cert_path,
                key_path=snap.key_path,
                ca_path=snap.ca_path,
                pinned_fingerprints=tuple(snap.pinned_fingerprints),
                sni_hostname=snap.sni_hostname,
                insecure=snap.insecure,
                min_version=snap.tls_min_version,
                ciphers=snap.ciphers,
            ),
            proxy=proxy,
            compressed=snap.compressed,
            redirects=RedirectPolicy(follow=snap.follow_redirects, max_hops=snap.max_redirects),
            retry=retry,
            timeout=snap.timeout,
            connect_timeout=snap.connect_timeout,
            cookies=tuple((p.key, p.value) for p in snap.cookies),
            cookie_file=snap.cookie_file,
            cookie_jar_path=snap.cookie_jar_path,
            output_path=snap.output_path,
            max_response_bytes=snap.max_response_bytes,
            http2=snap.http2,
            verbose=snap.verbose,
            silent=snap.silent,
            fail_on_error=snap.fail_on_error,
            request_id=snap.request_id,
        )


def _num(x: float) -> str:
    return str(int(x)) if float(x).is_integer() else repr(float(x))


def _query_arg(key: str, value: str) -> str:
    """
    --url-query argument for one pair. Keys that would split differently
    use curl's "+name=content" form, which carries already-encoded text.
    """
    if "=" in key or key.startswith("+"):
        return "+" + quote(key, safe="") + "=" + quote(value, safe="")
    return f"{key}={value}"


# ----------------------------
# Snapshot schema
# ----------------------------

class KVPair(BaseModel):
    key: str
    value: str

    model_config = {"extra": "forbid"}


class FormFieldModel(BaseModel):
    name: str
    value: str
    is_file: bool = False
    literal: bool = False

    model_config = {"extra": "forbid"}


class ConfigSnapshot(BaseModel):
    """
    Closed schema for persisted configurations. Multimaps are stored as
    KV pair lists so duplicates and order survive the round trip.
    """
    model_config = {"extra": "forbid"}

    method: str = ""
    url: str = ""
    headers: list[KVPair] = Field(default_factory=list)
    body_text: Optional[str] = None
    body_base64: Optional[str] = None
    form: list[FormFieldModel] = Field(default_factory=list)
    query: list[KVPair] = Field(default_factory=list)

    basic_auth_username: Optional[str] = None
    basic_auth_password: Optional[str] = None
    bearer_token: Optional[str] = None

    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    ca_path: Optional[str] = None
    pinned_fingerprints: list[str] = Field(default_factory=list)
    sni_hostname: Optional[str] = None
    insecure: bool = False
    tls_min_version: Optional[str] = Field(default=None, pattern=r"^1\.[23]$")
    ciphers: Optional[str] = None

    proxy_url: Optional[str] = None
    no_proxy: list[str] = Field(default_factory=list)

    compressed: bool = False
    follow_redirects: bool = False
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    retry_max_attempts: int = 1
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY
    retry_statuses: list[int] = Field(default_factory=lambda: sorted(DEFAULT_RETRYABLE_STATUSES))

    timeout: float = 0.0
    connect_timeout: float = 0.0

    cookies: list[KVPair] = Field(default_factory=list)
    cookie_file: Optional[str] = None
    cookie_jar_path: Optional[str] = None
    output_path: Optional[str] = None
    max_response_bytes: int = 0

    http2: bool = False
    verbose: bool = False
    silent: bool = False
    fail_on_error: bool = False
    request_id: Optional[str] = None
