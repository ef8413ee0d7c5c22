import re
from typing import Any, Iterable, Optional, Tuple, List
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode


REDACTED = "[REDACTED]"

_SENSITIVE_HEADERS = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "api-key",
}
_SENSITIVE_HEADER_PARTS = ("token", "secret", "password")

_SENSITIVE_QUERY_KEYS = {
    "api_key",
    "apikey",
    "key",
    "token",
    "access_token",
    "secret",
    "password",
    "signature",
    "sig",
}

_USERINFO_RE = re.compile(r"(?P<scheme>[A-Za-z][A-Za-z0-9+.\-]*://)(?P<user>[^:/@\s]*):[^@/\s]*@")


# ----------------------------
# Redaction helpers
# ----------------------------

def is_sensitive_header(name: str) -> bool:
    n = name.strip().lower()
    if n in _SENSITIVE_HEADERS:
        return True
    return any(part in n for part in _SENSITIVE_HEADER_PARTS)


def redact_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """
    Return a copy of a header multimap with secret values replaced.
    The input is never modified.
    """
    out: List[Tuple[str, str]] = []
    for k, v in headers:
        out.append((k, REDACTED if is_sensitive_header(k) else v))
    return out


def sanitize_url(url: Optional[str]) -> Optional[str]:
    """
    Mask credentials embedded in a URL:
      - user:password@host -> user:[REDACTED]@host
      - ?token=abc         -> ?token=[REDACTED]
    Unparseable input is returned with only the userinfo pass applied.
    """
    if not url:
        return url

    url = _USERINFO_RE.sub(lambda m: f"{m.group('scheme')}{m.group('user')}:{REDACTED}@", url)

    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    if not parts.query:
        return url

    pairs = parse_qsl(parts.query, keep_blank_values=True)
    if not any(k.lower() in _SENSITIVE_QUERY_KEYS for k, _ in pairs):
        return url

    cleaned = [(k, REDACTED if k.lower() in _SENSITIVE_QUERY_KEYS else v) for k, v in pairs]
    query = urlencode(cleaned, safe="[]")
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


_INLINE_SECRET_RES = [
    re.compile(r"((?:-H|--header)\s+['\"]?(?:authorization|proxy-authorization|cookie|x-api-key|api-key)\s*:\s*)[^'\"\n]+", re.IGNORECASE),
    re.compile(r"((?:-u|--user)\s+['\"]?[^:\s'\"]+:)[^\s'\"]+"),
    re.compile(r"((?:--oauth2-bearer)\s+['\"]?)[^\s'\"]+"),
]


def sanitize_command(command: str) -> str:
    """
    Best-effort redaction of a raw curl command before it is echoed into
    an error message or a log line.
    """
    for rx in _INLINE_SECRET_RES:
        command = rx.sub(lambda m: m.group(1) + REDACTED, command)
    return _USERINFO_RE.sub(lambda m: f"{m.group('scheme')}{m.group('user')}:{REDACTED}@", command)


# ----------------------------
# Error taxonomy
# ----------------------------

class CurlRunnerError(Exception):
    """
    Base class for everything raised by tooling.curl_runner.

    Structured context:
      - op: pipeline stage ("tokenize", "convert", "validate", "execute", ...)
      - url: sanitized target URL when known
      - field: offending configuration field when known
    """
    op: str = "curl"

    def __init__(
        self,
        message: str,
        *,
        op: Optional[str] = None,
        url: Optional[str] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if op is not None:
            self.op = op
        self.url = sanitize_url(url)
        self.field = field

    def context(self) -> dict[str, Any]:
        return {
            "op": self.op,
            "url": self.url,
            "field": self.field,
            "error": type(self).__name__,
            "message": self.message,
        }

    def __str__(self) -> str:
        parts = [self.op]
        if self.url:
            parts.append(f"url={self.url}")
        if self.field:
            parts.append(f"field={self.field}")
        return f"{': '.join(parts)}: {self.message}"


# --- tokenizer ---

class TokenizeError(CurlRunnerError, ValueError):
    op = "tokenize"

    def __init__(self, message: str, *, position: int):
        super().__init__(f"{message} at position {position}")
        self.position = position


class UnterminatedQuote(TokenizeError):
    def __init__(self, quote: str, position: int):
        super().__init__(f"unterminated {quote} quote", position=position)
        self.quote = quote


class DanglingEscape(TokenizeError):
    def __init__(self, position: int):
        super().__init__("dangling escape character", position=position)


# --- converter ---

class ConversionError(CurlRunnerError, ValueError):
    op = "convert"

    def __init__(self, message: str, *, flag: Optional[str] = None, position: Optional[int] = None):
        text = message
        if flag:
            text = f"{flag}: {text}"
        if position is not None:
            text = f"{text} (position {position})"
        super().__init__(text, field=flag)
        self.flag = flag
        self.position = position


class UnknownFlag(ConversionError):
    def __init__(self, flag: str, position: Optional[int] = None):
        super().__init__("unknown option", flag=flag, position=position)


class MissingValue(ConversionError):
    def __init__(self, flag: str, position: Optional[int] = None):
        super().__init__("option requires a value", flag=flag, position=position)


class MalformedHeader(ConversionError):
    def __init__(self, flag: str, header: str, position: Optional[int] = None):
        # header values may carry secrets; keep only the name part
        name = header.split(":", 1)[0].strip()
        name = name.split()[0] if name else ""
        super().__init__(f"malformed header {name!r}, expected 'Name: value'", flag=flag, position=position)


class DuplicateURL(ConversionError):
    def __init__(self, first: str, second: str, position: Optional[int] = None):
        super().__init__(
            f"more than one URL given ({sanitize_url(first)!r}, {sanitize_url(second)!r})",
            position=position,
        )


class InvalidFlagValue(ConversionError):
    def __init__(self, flag: str, reason: str, position: Optional[int] = None):
        super().__init__(reason, flag=flag, position=position)


# --- validator ---

class ValidationError(CurlRunnerError, ValueError):
    op = "validate"

    def __init__(self, field: str, reason: str, *, url: Optional[str] = None):
        super().__init__(reason, field=field, url=url)
        self.reason = reason


# --- execution ---

class ExecutionError(CurlRunnerError):
    op = "execute"


class TLSConfigError(ExecutionError):
    pass


class CertificatePinError(TLSConfigError):
    pass


class ProxyConfigError(ExecutionError):
    pass


class RequestConnectionError(ExecutionError):
    """Transport-level failure: DNS, connect, reset, protocol errors."""


class ResponseTooLarge(ExecutionError):
    def __init__(self, limit: int, *, url: Optional[str] = None):
        super().__init__(f"response body exceeds {limit} bytes", url=url, field="max_response_bytes")
        self.limit = limit


class RedirectLoopExceeded(ExecutionError):
    def __init__(self, max_hops: int, *, url: Optional[str] = None):
        super().__init__(f"maximum ({max_hops}) redirects followed", url=url, field="redirects")
        self.max_hops = max_hops


class HTTPStatusError(ExecutionError):
    """Raised for -f/--fail when the final status is >= 400."""

    def __init__(self, status_code: int, *, url: Optional[str] = None):
        super().__init__(f"server returned HTTP {status_code}", url=url, field="status")
        self.status_code = status_code


class RetriesExhausted(ExecutionError):
    def __init__(self, attempts: int, last_error: BaseException, *, url: Optional[str] = None):
        super().__init__(f"giving up after {attempts} attempts: {last_error}", url=url)
        self.attempts = attempts
        self.last_error = last_error


# --- cancellation ---

class CancellationError(CurlRunnerError):
    op = "execute"


class DeadlineExceeded(CancellationError, TimeoutError):
    def __init__(self, message: str = "deadline exceeded", *, url: Optional[str] = None):
        super().__init__(message, url=url)


class Cancelled(CancellationError):
    def __init__(self, message: str = "request cancelled", *, url: Optional[str] = None):
        super().__init__(message, url=url)
