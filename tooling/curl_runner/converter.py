import math
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote_plus, parse_qsl, unquote

from . import flags
from .config import (
    BasicAuthSpec,
    FormField,
    ProxySpec,
    RedirectPolicy,
    RequestConfig,
    RetryPolicy,
    TLSSpec,
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    DEFAULT_RETRYABLE_STATUSES,
)
from .errors import (
    ConversionError,
    DuplicateURL,
    InvalidFlagValue,
    MalformedHeader,
    MissingValue,
    UnknownFlag,
)
from .tokenizer import Token, TokenKind
from .variables import unescape_text


PROXY_SCHEMES = ("http", "https", "socks5", "socks5h")


# ----------------------------
# Value parsers
# ----------------------------

def parse_header_line(line: str) -> Optional[Tuple[str, str]]:
    """
    "Name: value" split on the first colon. Returns None when malformed
    (no colon, empty name, or whitespace inside the name).
    """
    if ":" not in line:
        return None
    k, v = line.split(":", 1)
    k = k.strip()
    if not k or any(c.isspace() for c in k):
        return None
    return k, v.strip()


def parse_pin_list(value: str) -> List[str]:
    """
    --pinnedpubkey accepts several ';'-separated entries:
      - sha256//<base64>   hash of the SubjectPublicKeyInfo
      - <hex>              sha256 of the DER certificate (colons/spaces allowed)
    """
    pins: List[str] = []
    for raw in value.split(";"):
        raw = raw.strip()
        if not raw:
            continue
        if raw.startswith("sha256//"):
            pins.append(raw)
            continue
        hexed = raw.replace(":", "").replace(" ", "").lower()
        if len(hexed) != 64 or any(c not in "0123456789abcdef" for c in hexed):
            raise ValueError(f"unsupported pin format {raw[:16]!r}...")
        pins.append(hexed)
    return pins


def parse_cookie_string(value: str) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    for part in value.split(";"):
        part = part.strip()
        if not part:
            continue
        if "=" in part:
            k, v = part.split("=", 1)
            out.append((k.strip(), v.strip()))
        else:
            out.append((part, ""))
    return out


def _split_kv(value: str) -> Tuple[str, str]:
    if "=" in value:
        k, v = value.split("=", 1)
        return k, v
    return value, ""


def parse_url_query(value: str) -> Tuple[str, str]:
    """
    --url-query "name=content" is taken as-is; the "+name=content" form
    carries percent-encoded text and is decoded here.
    """
    if value.startswith("+"):
        k, v = _split_kv(value[1:])
        return unquote(k), unquote(v)
    return _split_kv(value)


def _urlencode_data(value: str) -> str:
    """
    curl --data-urlencode forms:
      "content"       -> content encoded
      "=content"      -> content encoded
      "name=content"  -> name=<encoded content>
    """
    if "=" not in value:
        return quote_plus(value)
    name, content = value.split("=", 1)
    if not name:
        return quote_plus(content)
    return f"{name}={quote_plus(content)}"


# ----------------------------
# Conversion
# ----------------------------

class _Builder:
    """Mutable scratch state; only a finished RequestConfig leaves convert()."""

    def __init__(self):
        self.method: Optional[str] = None
        self.head = False
        self.url: Optional[str] = None
        self.url_position: Optional[int] = None
        self.headers: List[Tuple[str, str]] = []
        self.data: List[str] = []
        self.force_get = False
        self.form: List[FormField] = []
        self.query: List[Tuple[str, str]] = []
        self.basic_auth: Optional[BasicAuthSpec] = None
        self.bearer: Optional[str] = None

        self.cert: Optional[str] = None
        self.key: Optional[str] = None
        self.cacert: Optional[str] = None
        self.pins: List[str] = []
        self.sni: Optional[str] = None
        self.insecure = False
        self.min_tls: Optional[str] = None
        self.ciphers: Optional[str] = None

        self.proxy: Optional[str] = None
        self.no_proxy: Tuple[str, ...] = ()

        self.compressed = False
        self.follow = False
        self.max_hops = DEFAULT_MAX_REDIRECTS

        self.retries = 0
        self.retry_delay = DEFAULT_RETRY_BASE_DELAY
        self.retry_max_delay = DEFAULT_RETRY_MAX_DELAY
        self.retry_statuses: Optional[set] = None

        self.timeout = 0.0
        self.connect_timeout = 0.0

        self.cookies: List[Tuple[str, str]] = []
        self.cookie_file: Optional[str] = None
        self.cookie_jar: Optional[str] = None
        self.output: Optional[str] = None
        self.max_filesize = 0

        self.http2 = False
        self.verbose = False
        self.silent = False
        self.fail = False
        self.request_id: Optional[str] = None

    def set_url(self, url: str, position: int) -> None:
        if self.url is not None:
            raise DuplicateURL(self.url, url, position)
        self.url = url
        self.url_position = position

    def build(self) -> RequestConfig:
        if self.url is None:
            raise ConversionError("no URL specified")

        url = self.url
        if "://" not in url:
            url = "http://" + url

        method = self.method or ("HEAD" if self.head else "")

        body: Optional[bytes] = None
        query = list(self.query)
        if self.data:
            joined = "&".join(self.data)
            if self.force_get:
                query.extend(parse_qsl(joined, keep_blank_values=True))
            else:
                body = joined.encode("utf-8", "surrogateescape")
        if self.force_get and not self.method:
            method = "HEAD" if self.head else "GET"

        statuses = DEFAULT_RETRYABLE_STATUSES
        if self.retry_statuses is not None:
            statuses = frozenset(self.retry_statuses)

        return RequestConfig(
            method=method,
            url=url,
            headers=tuple(self.headers),
            body=body,
            form=tuple(self.form),
            query=tuple(query),
            basic_auth=self.basic_auth,
            bearer_token=self.bearer,
            tls=TLSSpec(
                cert_path=self.cert,
                key_path=self.key,
                ca_path=self.cacert,
                pinned_fingerprints=tuple(self.pins),
                sni_hostname=self.sni,
                insecure=self.insecure,
                min_version=self.min_tls,
                ciphers=self.ciphers,
            ),
            proxy=ProxySpec(self.proxy, self.no_proxy) if self.proxy else None,
            compressed=self.compressed,
            redirects=RedirectPolicy(follow=self.follow, max_hops=self.max_hops),
            retry=RetryPolicy(
                max_attempts=self.retries + 1,
                base_delay=self.retry_delay,
                max_delay=self.retry_max_delay,
                retryable_statuses=statuses,
            ),
            timeout=self.timeout,
            connect_timeout=self.connect_timeout,
            cookies=tuple(self.cookies),
            cookie_file=self.cookie_file,
            cookie_jar_path=self.cookie_jar,
            output_path=self.output,
            max_response_bytes=self.max_filesize,
            http2=self.http2,
            verbose=self.verbose,
            silent=self.silent,
            fail_on_error=self.fail,
            request_id=self.request_id,
        )


def _seconds(flag: str, value: str, position: int) -> float:
    try:
        x = float(value)
    except ValueError:
        raise InvalidFlagValue(flag, f"expected a number of seconds, got {value!r}", position) from None
    if math.isnan(x) or math.isinf(x) or x < 0:
        raise InvalidFlagValue(flag, f"expected a non-negative number of seconds, got {value!r}", position)
    return x


def _integer(flag: str, value: str, position: int, *, minimum: int = 0) -> int:
    try:
        x = int(value.strip())
    except ValueError:
        raise InvalidFlagValue(flag, f"expected an integer, got {value!r}", position) from None
    if x < minimum:
        raise InvalidFlagValue(flag, f"expected an integer >= {minimum}, got {value!r}", position)
    return x


def _apply_switch(b: _Builder, key: str) -> None:
    if key == "location":
        b.follow = True
    elif key == "insecure":
        b.insecure = True
    elif key == "verbose":
        b.verbose = True
    elif key == "silent":
        b.silent = True
    elif key == "show_error":
        pass  # terminal rendering only
    elif key == "fail":
        b.fail = True
    elif key == "compressed":
        b.compressed = True
    elif key == "get":
        b.force_get = True
    elif key == "head":
        b.head = True
    elif key == "http2":
        b.http2 = True
    elif key == "http1_1":
        b.http2 = False
    elif key == "tlsv1_2":
        b.min_tls = "1.2"
    elif key == "tlsv1_3":
        b.min_tls = "1.3"


def _apply_value(b: _Builder, key: str, flag: str, value: str, position: int) -> None:
    if key == "request":
        if not value.strip():
            raise InvalidFlagValue(flag, "empty method", position)
        b.method = value.strip().upper()

    elif key == "url":
        b.set_url(value, position)

    elif key == "url_query":
        b.query.append(parse_url_query(value))

    elif key == "header":
        parsed = parse_header_line(value)
        if parsed is None:
            raise MalformedHeader(flag, value, position)
        b.headers.append(parsed)

    elif key == "user_agent":
        b.headers.append(("User-Agent", value))

    elif key == "referer":
        b.headers.append(("Referer", value))

    elif key in ("data", "data_raw", "data_binary"):
        b.data.append(value)

    elif key == "data_urlencode":
        b.data.append(_urlencode_data(value))

    elif key in ("form", "form_string"):
        if "=" not in value:
            raise InvalidFlagValue(flag, "expected name=value", position)
        name, content = value.split("=", 1)
        if key == "form_string":
            b.form.append(FormField(name=name, value=content, literal=True))
        elif content.startswith("@") or content.startswith("<"):
            # "<file" (contents as a plain field) is sent as a file part too
            b.form.append(FormField(name=name, value=content[1:], is_file=True))
        else:
            b.form.append(FormField(name=name, value=content))

    elif key == "user":
        if ":" in value:
            user, password = value.split(":", 1)
        else:
            user, password = value, ""
        b.basic_auth = BasicAuthSpec(username=user, password=password)

    elif key == "oauth2_bearer":
        if not value:
            raise InvalidFlagValue(flag, "empty bearer token", position)
        b.bearer = value

    elif key == "cert":
        b.cert = value
    elif key == "key":
        b.key = value
    elif key == "cacert":
        b.cacert = value
    elif key == "pinnedpubkey":
        try:
            b.pins.extend(parse_pin_list(value))
        except ValueError as e:
            raise InvalidFlagValue(flag, str(e), position) from None
    elif key == "sni_hostname":
        b.sni = value
    elif key == "ciphers":
        b.ciphers = value

    elif key == "proxy":
        proxy = value.strip()
        if not proxy:
            b.proxy = None
            return
        if "://" not in proxy:
            proxy = "http://" + proxy
        scheme = proxy.split("://", 1)[0].lower()
        if scheme not in PROXY_SCHEMES:
            raise InvalidFlagValue(flag, f"unsupported proxy scheme {scheme!r}", position)
        b.proxy = proxy

    elif key == "noproxy":
        b.no_proxy = tuple(p.strip() for p in value.split(",") if p.strip())

    elif key == "max_time":
        b.timeout = _seconds(flag, value, position)
    elif key == "connect_timeout":
        b.connect_timeout = _seconds(flag, value, position)

    elif key == "retry":
        b.retries = _integer(flag, value, position)
    elif key == "retry_delay":
        b.retry_delay = _seconds(flag, value, position)
    elif key == "retry_max_time":
        b.retry_max_delay = _seconds(flag, value, position)
    elif key == "retry_status":
        if b.retry_statuses is None:
            b.retry_statuses = set()
        for part in value.split(","):
            if not part.strip():
                continue
            code = _integer(flag, part, position, minimum=100)
            if code > 599:
                raise InvalidFlagValue(flag, f"not an HTTP status: {code}", position)
            b.retry_statuses.add(code)

    elif key == "max_redirs":
        hops = _integer(flag, value, position, minimum=-1)
        b.max_hops = DEFAULT_MAX_REDIRECTS if hops == -1 else hops

    elif key == "cookie":
        if "=" in value:
            b.cookies.extend(parse_cookie_string(value))
        else:
            b.cookie_file = value
    elif key == "cookie_jar":
        b.cookie_jar = value
    elif key == "output":
        b.output = value
    elif key == "max_filesize":
        b.max_filesize = _integer(flag, value, position)
    elif key == "request_id":
        if not value.strip():
            raise InvalidFlagValue(flag, "empty request id", position)
        b.request_id = value.strip()


def _text(tok: Token) -> str:
    # Unexpanded tokens still carry "$$" escapes from the tokenizer.
    return tok.text if tok.expanded else unescape_text(tok.text)


def convert(tokens: Sequence[Token]) -> RequestConfig:
    """
    Walk classified tokens left to right and build a RequestConfig.

    - switches consume nothing, value flags consume exactly the next token
    - the only bare token is the URL; a second one is DuplicateURL
    - the first problem found is raised; nothing partial is returned
    """
    b = _Builder()
    i = 0
    n = len(tokens)

    while i < n:
        tok = tokens[i]

        if tok.kind is not TokenKind.FLAG:
            b.set_url(_text(tok), tok.position)
            i += 1
            continue

        resolved = flags.resolve(tok.text)
        if not resolved:
            raise UnknownFlag(tok.text, tok.position)

        for spec, attached in resolved:
            if not spec.takes_value:
                _apply_switch(b, spec.key)
                continue

            if attached is not None:
                # pre-split args may still carry "--data=x" style values
                value = unescape_text(attached)
            else:
                if i + 1 >= n or tokens[i + 1].kind is TokenKind.FLAG:
                    raise MissingValue(tok.text, tok.position)
                i += 1
                value = _text(tokens[i])

            _apply_value(b, spec.key, tok.text, value, tok.position)

        i += 1

    try:
        return b.build()
    except ValueError as e:
        if isinstance(e, ConversionError):
            raise
        raise ConversionError(str(e)) from e
