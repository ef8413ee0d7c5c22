import pytest

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from tooling.curl_runner import (
    BasicAuthSpec,
    FormField,
    ProxySpec,
    RedirectPolicy,
    RequestConfig,
    RunnerSettings,
    StreamingBody,
    TLSSpec,
    ValidationError,
    ValidationLimits,
    validate,
)


def cfg(**kw) -> RequestConfig:
    kw.setdefault("url", "https://x.test/")
    return RequestConfig(**kw)


def test_valid_config_is_returned_unchanged():
    c = cfg(headers=(("X-Token", "abc"),))
    assert validate(c) is c


# ----------------------------
# Header limits
# ----------------------------

def test_header_line_at_exact_limit_is_accepted():
    # "X-Big: " is 7 bytes
    c = cfg(headers=(("X-Big", "a" * 8185),))
    assert validate(c) is c


def test_header_line_one_byte_over_is_rejected():
    with pytest.raises(ValidationError) as ei:
        validate(cfg(headers=(("X-Big", "a" * 8186),)))
    assert ei.value.field == "headers"


def test_header_count_limit():
    hundred = tuple((f"X-H{i}", "v") for i in range(100))
    validate(cfg(headers=hundred))
    with pytest.raises(ValidationError):
        validate(cfg(headers=hundred + (("X-One-More", "v"),)))


@pytest.mark.parametrize("name", ["Host", "content-length", "TRANSFER-ENCODING"])
def test_forbidden_headers(name):
    with pytest.raises(ValidationError) as ei:
        validate(cfg(headers=((name, "x"),)))
    assert ei.value.field == "headers"


@pytest.mark.parametrize("name", ["Bad Name", "Bad:Name", "X-\u00e9"])
def test_invalid_header_names(name):
    with pytest.raises(ValidationError):
        validate(cfg(headers=((name, "x"),)))


def test_header_value_with_line_break():
    with pytest.raises(ValidationError):
        validate(cfg(headers=(("X-A", "one\r\nX-Injected: 1"),)))


# ----------------------------
# Body / form / query
# ----------------------------

def test_body_size_limit():
    limits = ValidationLimits(max_body_bytes=16)
    validate(cfg(body=b"x" * 16), limits)
    with pytest.raises(ValidationError) as ei:
        validate(cfg(body=b"x" * 17), limits)
    assert ei.value.field == "body"


def test_body_and_form_together():
    with pytest.raises(ValidationError) as ei:
        validate(cfg(body=b"a=1", form=(FormField("f", "v"),)))
    assert ei.value.field == "form"


def test_streaming_body_is_accepted():
    async def gen():
        yield b"x"

    validate(cfg(body=StreamingBody(gen())))


def test_unsupported_body_type():
    with pytest.raises(ValidationError):
        validate(cfg(body=12345))


def test_form_and_query_counts():
    limits = ValidationLimits(max_form_fields=2, max_query_params=2)
    with pytest.raises(ValidationError) as ei:
        validate(cfg(form=tuple(FormField(f"f{i}", "v") for i in range(3))), limits)
    assert ei.value.field == "form"
    with pytest.raises(ValidationError) as ei:
        validate(cfg(query=tuple((f"q{i}", "v") for i in range(3))), limits)
    assert ei.value.field == "query"


# ----------------------------
# Method / URL
# ----------------------------

def test_unsupported_method():
    with pytest.raises(ValidationError) as ei:
        validate(cfg(method="FETCH"))
    assert ei.value.field == "method"


def test_url_at_exact_limit_is_accepted():
    url = "https://x.test/" + "a" * (8192 - len("https://x.test/"))
    assert len(url) == 8192
    validate(cfg(url=url))
    with pytest.raises(ValidationError):
        validate(cfg(url=url + "a"))


@pytest.mark.parametrize("url", ["", "ftp://x.test/file", "https:///nohost"])
def test_bad_urls(url):
    with pytest.raises(ValidationError) as ei:
        validate(cfg(url=url))
    assert ei.value.field == "url"


# ----------------------------
# Credentials over plain http
# ----------------------------

@pytest.mark.parametrize("kw", [
    {"basic_auth": BasicAuthSpec("u", "p")},
    {"bearer_token": "tok"},
    {"headers": (("Authorization", "Bearer tok"),)},
])
def test_credentials_over_http_are_refused(kw):
    with pytest.raises(ValidationError) as ei:
        validate(cfg(url="http://x.test/", **kw))
    assert ei.value.field == "auth"
    # the secret itself never lands in the message
    assert "tok" not in str(ei.value)


def test_credentials_over_http_can_be_allowed():
    c = cfg(url="http://x.test/", bearer_token="tok")
    assert validate(c, allow_insecure_auth=True) is c

    limits = ValidationLimits.from_settings(RunnerSettings(_env_file=None, allow_insecure_auth=True))
    assert validate(c, limits) is c


def test_credentials_over_https_are_fine():
    validate(cfg(basic_auth=BasicAuthSpec("u", "p")))


# ----------------------------
# Numeric / TLS / proxy
# ----------------------------

@pytest.mark.parametrize("kw,field", [
    ({"timeout": -1.0}, "timeout"),
    ({"connect_timeout": -0.5}, "connect_timeout"),
    ({"redirects": RedirectPolicy(follow=True, max_hops=-1)}, "redirects.max_hops"),
    ({"max_response_bytes": -1}, "max_response_bytes"),
])
def test_negative_numbers(kw, field):
    with pytest.raises(ValidationError) as ei:
        validate(cfg(**kw))
    assert ei.value.field == field


def test_key_without_cert():
    with pytest.raises(ValidationError) as ei:
        validate(cfg(tls=TLSSpec(key_path="k.pem")))
    assert ei.value.field == "tls.key_path"


def test_unknown_tls_version():
    with pytest.raises(ValidationError):
        validate(cfg(tls=TLSSpec(min_version="1.1")))


def test_proxy_scheme():
    validate(cfg(proxy=ProxySpec("socks5h://p.test:1080")))
    with pytest.raises(ValidationError) as ei:
        validate(cfg(proxy=ProxySpec("ftp://p.test")))
    assert ei.value.field == "proxy"


def test_first_failing_check_is_reported():
    # both the method and the url are wrong; method is checked first
    with pytest.raises(ValidationError) as ei:
        validate(cfg(method="FETCH", url=""))
    assert ei.value.field == "method"


def test_settings_drive_limits():
    s = RunnerSettings(_env_file=None, max_headers=1)
    with pytest.raises(ValidationError):
        validate(cfg(headers=(("A", "1"), ("B", "2"))), ValidationLimits.from_settings(s))
