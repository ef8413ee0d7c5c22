import logging

from .api import (
    CurlRunner,
    curl,
    curl_args,
    curl_bytes,
    curl_command,
    curl_download,
    curl_json,
    curl_text,
    curl_with_vars,
)
from .builder import RequestBuilder
from .config import (
    BasicAuthSpec,
    FormField,
    ProxySpec,
    RedirectPolicy,
    RequestConfig,
    RetryPolicy,
    StreamingBody,
    TLSSpec,
)
from .converter import convert
from .deadline import CancellationSignal, EffectiveDeadline, ExecutionContext, resolve
from .engine import Response, execute
from .errors import (
    Cancelled,
    CancellationError,
    CertificatePinError,
    ConversionError,
    CurlRunnerError,
    DanglingEscape,
    DeadlineExceeded,
    DuplicateURL,
    ExecutionError,
    HTTPStatusError,
    InvalidFlagValue,
    MalformedHeader,
    MissingValue,
    ProxyConfigError,
    RedirectLoopExceeded,
    RequestConnectionError,
    ResponseTooLarge,
    RetriesExhausted,
    TLSConfigError,
    TokenizeError,
    UnknownFlag,
    UnterminatedQuote,
    ValidationError,
    redact_headers,
    sanitize_url,
)
from .logs import configure_logging
from .metrics import RequestMetrics
from .retry import RetryController, RetryDecision
from .settings import RunnerSettings
from .tokenizer import Token, TokenKind, classify_args, tokenize
from .validation import ValidationLimits, validate
from .variables import EnvironmentLookup, MappingEnvironment, ProcessEnvironment, expand

logging.getLogger(__name__).addHandler(logging.NullHandler())
