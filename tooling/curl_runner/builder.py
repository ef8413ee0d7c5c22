"""
Fluent construction of RequestConfig values without a curl command.

    cfg = (
        RequestBuilder()
        .post("https://api.example.com/v1/items")
        .json({"name": "x"})
        .set_bearer_token(token)
        .with_default_retry()
        .build()
    )

Every setter replaces the builder's current config with a modified clone, so
a config handed out by build() never changes afterwards and a builder can be
reused as a template.
"""
import dataclasses
import json
from typing import Any, Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

from .config import (
    DEFAULT_RETRYABLE_STATUSES,
    BasicAuthSpec,
    Body,
    FormField,
    Middleware,
    ProxySpec,
    RedirectPolicy,
    RequestConfig,
    RetryPolicy,
)
from .validation import ValidationLimits, validate


Pairs = Union[Mapping[str, str], Iterable[Tuple[str, str]]]

QUICK_TIMEOUT = 5.0
SLOW_TIMEOUT = 120.0
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0


class RequestBuilder:
    def __init__(self, base: Optional[RequestConfig] = None):
        self._cfg = base if base is not None else RequestConfig()

    def _set(self, **changes: Any) -> "RequestBuilder":
        self._cfg = self._cfg.clone(**changes)
        return self

    def _set_tls(self, **changes: Any) -> "RequestBuilder":
        return self._set(tls=dataclasses.replace(self._cfg.tls, **changes))

    @property
    def config(self) -> RequestConfig:
        """Current state, not validated."""
        return self._cfg

    # ----------------------------
    # Target
    # ----------------------------

    def set_method(self, method: str) -> "RequestBuilder":
        return self._set(method=method.upper())

    def set_url(self, url: str) -> "RequestBuilder":
        return self._set(url=url)

    def _verb(self, method: str, url: Optional[str]) -> "RequestBuilder":
        self.set_method(method)
        if url is not None:
            self.set_url(url)
        return self

    def get(self, url: Optional[str] = None) -> "RequestBuilder":
        return self._verb("GET", url)

    def post(self, url: Optional[str] = None) -> "RequestBuilder":
        return self._verb("POST", url)

    def put(self, url: Optional[str] = None) -> "RequestBuilder":
        return self._verb("PUT", url)

    def patch(self, url: Optional[str] = None) -> "RequestBuilder":
        return self._verb("PATCH", url)

    def delete(self, url: Optional[str] = None) -> "RequestBuilder":
        return self._verb("DELETE", url)

    def head(self, url: Optional[str] = None) -> "RequestBuilder":
        return self._verb("HEAD", url)

    # ----------------------------
    # Headers, query, body
    # ----------------------------

    def add_header(self, name: str, value: str) -> "RequestBuilder":
        """Appends; repeated names are sent as separate header lines."""
        return self._set(headers=self._cfg.headers + ((name, value),))

    def set_header(self, name: str, value: str) -> "RequestBuilder":
        """Replaces every header of that name."""
        self._cfg = self._cfg.with_header(name, value)
        return self

    def set_headers(self, headers: Pairs) -> "RequestBuilder":
        return self._set(headers=headers)

    def set_user_agent(self, value: str) -> "RequestBuilder":
        return self.set_header("User-Agent", value)

    def set_referer(self, value: str) -> "RequestBuilder":
        return self.set_header("Referer", value)

    def set_query_params(self, params: Pairs) -> "RequestBuilder":
        return self._set(query=params)

    def add_query_param(self, name: str, value: str) -> "RequestBuilder":
        return self._set(query=self._cfg.query + ((name, value),))

    def set_body(self, body: Body) -> "RequestBuilder":
        return self._set(body=body)

    def json(self, data: Any) -> "RequestBuilder":
        """Serialized JSON body with Content-Type: application/json. Strings and bytes are sent as given."""
        if not isinstance(data, (str, bytes)):
            data = json.dumps(data)
        self._set(body=data)
        return self.set_header("Content-Type", "application/json")

    def form(self, fields: Pairs) -> "RequestBuilder":
        """URL-encoded form body (what -d name=value pairs produce)."""
        items = fields.items() if isinstance(fields, Mapping) else fields
        self._set(body=urlencode(list(items)))
        return self.set_header("Content-Type", "application/x-www-form-urlencoded")

    def add_form_field(self, name: str, value: str, *, is_file: bool = False) -> "RequestBuilder":
        """One multipart part (-F); `is_file` uploads the file at path `value`."""
        return self._set(form=self._cfg.form + (FormField(name, value, is_file=is_file),))

    # ----------------------------
    # Credentials / cookies
    # ----------------------------

    def set_basic_auth(self, username: str, password: str) -> "RequestBuilder":
        return self._set(basic_auth=BasicAuthSpec(username, password))

    def set_bearer_token(self, token: str) -> "RequestBuilder":
        return self._set(bearer_token=token)

    def add_cookie(self, name: str, value: str) -> "RequestBuilder":
        return self._set(cookies=self._cfg.cookies + ((name, value),))

    def set_cookie_file(self, path: str) -> "RequestBuilder":
        return self._set(cookie_file=path)

    def set_cookie_jar(self, path: str) -> "RequestBuilder":
        return self._set(cookie_jar_path=path)

    # ----------------------------
    # TLS / proxy
    # ----------------------------

    def set_cert_file(self, path: str, key_path: Optional[str] = None) -> "RequestBuilder":
        return self._set_tls(cert_path=path, key_path=key_path)

    def set_key_file(self, path: str) -> "RequestBuilder":
        return self._set_tls(key_path=path)

    def set_ca_file(self, path: str) -> "RequestBuilder":
        return self._set_tls(ca_path=path)

    def set_insecure(self, insecure: bool = True) -> "RequestBuilder":
        return self._set_tls(insecure=insecure)

    def add_pinned_fingerprint(self, pin: str) -> "RequestBuilder":
        return self._set_tls(pinned_fingerprints=self._cfg.tls.pinned_fingerprints + (pin,))

    def set_sni_hostname(self, hostname: str) -> "RequestBuilder":
        return self._set_tls(sni_hostname=hostname)

    def set_min_tls_version(self, version: str) -> "RequestBuilder":
        return self._set_tls(min_version=version)

    def set_ciphers(self, ciphers: str) -> "RequestBuilder":
        return self._set_tls(ciphers=ciphers)

    def set_proxy(self, url: str, no_proxy: Iterable[str] = ()) -> "RequestBuilder":
        return self._set(proxy=ProxySpec(url, tuple(no_proxy)))

    # ----------------------------
    # Behaviour
    # ----------------------------

    def set_timeout(self, seconds: float) -> "RequestBuilder":
        return self._set(timeout=seconds)

    def set_connect_timeout(self, seconds: float) -> "RequestBuilder":
        return self._set(connect_timeout=seconds)

    def quick_timeout(self) -> "RequestBuilder":
        return self.set_timeout(QUICK_TIMEOUT)

    def slow_timeout(self) -> "RequestBuilder":
        return self.set_timeout(SLOW_TIMEOUT)

    def set_follow_redirects(self, follow: bool = True) -> "RequestBuilder":
        return self._set(redirects=dataclasses.replace(self._cfg.redirects, follow=follow))

    def set_max_redirects(self, max_hops: int) -> "RequestBuilder":
        return self._set(redirects=RedirectPolicy(follow=self._cfg.redirects.follow, max_hops=max_hops))

    def set_compress(self, compressed: bool = True) -> "RequestBuilder":
        return self._set(compressed=compressed)

    def set_http2(self, enabled: bool = True) -> "RequestBuilder":
        return self._set(http2=enabled)

    def set_retry(self, policy: RetryPolicy) -> "RequestBuilder":
        return self._set(retry=policy)

    def with_default_retry(self) -> "RequestBuilder":
        """3 retries, 1s initial delay, on 429 and the usual 5xx statuses."""
        return self.with_exponential_backoff(DEFAULT_RETRIES, DEFAULT_RETRY_DELAY)

    def with_exponential_backoff(
        self,
        max_retries: int,
        initial_delay: float,
        max_delay: Optional[float] = None,
    ) -> "RequestBuilder":
        # max_retries counts retries only; the policy counts the first try too
        return self.set_retry(RetryPolicy(
            max_attempts=max_retries + 1,
            base_delay=initial_delay,
            max_delay=max_delay if max_delay is not None else self._cfg.retry.max_delay,
            retryable_statuses=DEFAULT_RETRYABLE_STATUSES,
        ))

    def set_max_response_bytes(self, limit: int) -> "RequestBuilder":
        return self._set(max_response_bytes=limit)

    def set_output_file(self, path: str) -> "RequestBuilder":
        return self._set(output_path=path)

    def set_silent(self, silent: bool = True) -> "RequestBuilder":
        return self._set(silent=silent)

    def set_verbose(self, verbose: bool = True) -> "RequestBuilder":
        return self._set(verbose=verbose)

    def set_fail_on_error(self, fail: bool = True) -> "RequestBuilder":
        return self._set(fail_on_error=fail)

    def set_request_id(self, request_id: str) -> "RequestBuilder":
        return self._set(request_id=request_id)

    def add_middleware(self, *hooks: Middleware) -> "RequestBuilder":
        self._cfg = self._cfg.with_middleware(*hooks)
        return self

    # ----------------------------
    # Result
    # ----------------------------

    def build(self, limits: Optional[ValidationLimits] = None) -> RequestConfig:
        """Validated config; raises ValidationError like CurlRunner.parse does."""
        return validate(self._cfg, limits)
