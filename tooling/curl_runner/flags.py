"""
Registry of the curl options understood by the tokenizer and the converter.

Every option is either a boolean switch (consumes nothing) or takes exactly
one value (consumes the next token). There are no optionally-valued options;
keeping the two sets disjoint is what lets the tokenizer classify tokens
without knowing anything about the converter.
"""
from dataclasses import dataclass
from typing import Optional, Tuple, List, Dict


@dataclass(frozen=True)
class FlagSpec:
    key: str                 # converter dispatch key
    names: Tuple[str, ...]   # every spelling, e.g. ("-H", "--header")
    takes_value: bool


def _switch(key: str, *names: str) -> FlagSpec:
    return FlagSpec(key=key, names=names, takes_value=False)


def _value(key: str, *names: str) -> FlagSpec:
    return FlagSpec(key=key, names=names, takes_value=True)


FLAGS: Tuple[FlagSpec, ...] = (
    # switches
    _switch("location", "-L", "--location"),
    _switch("insecure", "-k", "--insecure"),
    _switch("verbose", "-v", "--verbose"),
    _switch("silent", "-s", "--silent"),
    _switch("show_error", "-S", "--show-error"),
    _switch("fail", "-f", "--fail"),
    _switch("compressed", "--compressed"),
    _switch("get", "-G", "--get"),
    _switch("head", "-I", "--head"),
    _switch("http2", "--http2"),
    _switch("http1_1", "--http1.1"),
    _switch("tlsv1_2", "--tlsv1.2"),
    _switch("tlsv1_3", "--tlsv1.3"),

    # request line / body
    _value("request", "-X", "--request"),
    _value("url", "--url"),
    _value("url_query", "--url-query"),
    _value("header", "-H", "--header"),
    _value("data", "-d", "--data", "--data-ascii"),
    _value("data_raw", "--data-raw"),
    _value("data_binary", "--data-binary"),
    _value("data_urlencode", "--data-urlencode"),
    _value("form", "-F", "--form"),
    _value("form_string", "--form-string"),
    _value("user_agent", "-A", "--user-agent"),
    _value("referer", "-e", "--referer"),

    # credentials
    _value("user", "-u", "--user"),
    _value("oauth2_bearer", "--oauth2-bearer"),

    # tls
    _value("cert", "-E", "--cert"),
    _value("key", "--key"),
    _value("cacert", "--cacert"),
    _value("pinnedpubkey", "--pinnedpubkey"),
    _value("sni_hostname", "--sni-hostname"),
    _value("ciphers", "--ciphers"),

    # proxy
    _value("proxy", "-x", "--proxy"),
    _value("noproxy", "--noproxy"),

    # timing / retry / redirects
    _value("max_time", "-m", "--max-time"),
    _value("connect_timeout", "--connect-timeout"),
    _value("retry", "--retry"),
    _value("retry_delay", "--retry-delay"),
    _value("retry_max_time", "--retry-max-time"),
    _value("retry_status", "--retry-status"),
    _value("max_redirs", "--max-redirs"),

    # cookies / output
    _value("cookie", "-b", "--cookie"),
    _value("cookie_jar", "-c", "--cookie-jar"),
    _value("output", "-o", "--output"),
    _value("max_filesize", "--max-filesize"),

    # tracing
    _value("request_id", "--request-id"),
)

_BY_NAME: Dict[str, FlagSpec] = {name: spec for spec in FLAGS for name in spec.names}


def looks_like_flag(text: str) -> bool:
    return len(text) > 1 and text.startswith("-")


def split_short_cluster(text: str) -> Optional[List[Tuple[FlagSpec, Optional[str]]]]:
    """
    Expand a clustered short option the way curl does:
      - "-sL"    -> [(-s, None), (-L, None)]
      - "-XPOST" -> [(-X, "POST")]
      - "-sX"    -> [(-s, None), (-X, None)]   (value comes from the next token)

    Returns None when the text is not a valid cluster (unknown letter).
    """
    if not text.startswith("-") or text.startswith("--") or len(text) < 3:
        return None

    out: List[Tuple[FlagSpec, Optional[str]]] = []
    i = 1
    while i < len(text):
        spec = _BY_NAME.get("-" + text[i])
        if spec is None:
            return None
        if spec.takes_value:
            rest = text[i + 1:]
            out.append((spec, rest or None))
            return out
        out.append((spec, None))
        i += 1
    return out


def resolve(text: str) -> Optional[List[Tuple[FlagSpec, Optional[str]]]]:
    """
    Resolve a flag token to one or more (spec, attached_value) pairs.
    Long options also accept the "--name=value" spelling.
    """
    spec = _BY_NAME.get(text)
    if spec is not None:
        return [(spec, None)]

    if text.startswith("--") and "=" in text:
        name, value = text.split("=", 1)
        spec = _BY_NAME.get(name)
        if spec is not None and spec.takes_value:
            return [(spec, value)]
        return None

    return split_short_cluster(text)
