"""
Command-line front end.

    curl-runner -H 'Accept: application/json' https://api.example.com/v1/items
    curl-runner -i -w '%{http_code}\\n' "curl -u $USER:$PASS https://api.example.com"

Arguments are curl arguments, except for the front end's own options
(-i/--include, -w/--write-out, --dotenv), which may appear anywhere outside
a flag's value. A single argument containing whitespace is read as a whole
curl command string with shell quoting.

Exit codes follow curl where one exists (2 usage, 3 bad URL, 5 proxy, 7 connection,
22 HTTP error with -f, 28 timeout, 35 TLS, 47 redirects, 63 size cap,
90 pin mismatch).
"""
import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import List, Optional, Sequence, TextIO, Tuple

import httpx

from . import flags
from .api import CurlRunner
from .engine import Response
from .errors import (
    Cancelled,
    CertificatePinError,
    ConversionError,
    CurlRunnerError,
    DeadlineExceeded,
    HTTPStatusError,
    ProxyConfigError,
    RedirectLoopExceeded,
    RequestConnectionError,
    ResponseTooLarge,
    RetriesExhausted,
    TLSConfigError,
    TokenizeError,
    ValidationError,
)
from .logs import configure_logging
from .settings import RunnerSettings


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

_INCLUDE = ("-i", "--include")
_WRITE_OUT = ("-w", "--write-out")
_DOTENV = ("--dotenv",)


# ----------------------------
# Argument split
# ----------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="curl-runner",
        description="Run a curl command line through curl-runner.",
        epilog="All other arguments are passed through as curl arguments.",
        allow_abbrev=False,
    )
    parser.add_argument("-i", "--include", action="store_true", help="Print response status line and headers")
    parser.add_argument("-w", "--write-out", dest="write_out", help="Print FORMAT after the body, e.g. '%%{http_code}\\n'")
    parser.add_argument("--dotenv", dest="dotenv_path", help="Load variables from this .env file first")
    return parser


def split_args(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """
    Separate front-end options from curl arguments. Values of curl flags are
    skipped, so `-d -i` sends the body "-i".
    """
    own: List[str] = []
    curl_args: List[str] = []
    expect_value = False
    i = 0
    while i < len(argv):
        arg = argv[i]
        i += 1
        if expect_value:
            curl_args.append(arg)
            expect_value = False
            continue

        name = arg.split("=", 1)[0] if arg.startswith("--") else arg
        if arg in _INCLUDE or arg in ("-h", "--help"):
            own.append(arg)
            continue
        if name in _WRITE_OUT + _DOTENV:
            own.append(arg)
            if arg == name and i < len(argv):
                own.append(argv[i])
                i += 1
            continue

        curl_args.append(arg)
        resolved = flags.resolve(arg) if flags.looks_like_flag(arg) else None
        if resolved:
            spec, attached = resolved[-1]
            expect_value = spec.takes_value and attached is None
    return own, curl_args


@dataclass
class CliOptions:
    include: bool = False
    write_out: Optional[str] = None
    dotenv_path: Optional[str] = None


# ----------------------------
# Output
# ----------------------------

def format_body(response: Response) -> str:
    """JSON bodies are pretty-printed; everything else is decoded text."""
    if "json" in response.headers.get("content-type", "").lower():
        try:
            return json.dumps(response.json(), indent=2, ensure_ascii=False) + "\n"
        except ValueError:
            pass
    return response.text


def format_headers(response: Response) -> str:
    reason = httpx.codes.get_reason_phrase(response.status_code)
    lines = [f"{response.http_version} {response.status_code} {reason}".rstrip()]
    lines += [f"{k}: {v}" for k, v in response.headers.multi_items()]
    return "\r\n".join(lines) + "\r\n\r\n"


def write_out(fmt: str, response: Response) -> str:
    """Expand a subset of curl's --write-out variables."""
    values = {
        "http_code": str(response.status_code),
        "response_code": str(response.status_code),
        "content_type": response.headers.get("content-type", ""),
        "size_download": str(len(response.content)),
        "num_redirects": str(response.redirects),
        "url_effective": response.url,
        "http_version": response.http_version,
        "time_total": f"{response.elapsed_ms / 1000:.6f}",
    }
    if response.metrics is not None:
        values["num_retries"] = str(response.metrics.retry_count)

    out = fmt.replace("\\n", "\n").replace("\\t", "\t").replace("\\r", "\r")
    for key, value in values.items():
        out = out.replace("%{" + key + "}", value)
    return out


def exit_code(exc: BaseException) -> int:
    if isinstance(exc, RetriesExhausted):
        return exit_code(exc.last_error)
    if isinstance(exc, (TokenizeError, ConversionError)):
        return EXIT_USAGE
    if isinstance(exc, ValidationError):
        return 3 if exc.field == "url" else EXIT_USAGE
    if isinstance(exc, DeadlineExceeded):
        return 28
    if isinstance(exc, CertificatePinError):
        return 90
    if isinstance(exc, TLSConfigError):
        return 35
    if isinstance(exc, ProxyConfigError):
        return 5
    if isinstance(exc, RequestConnectionError):
        return 7
    if isinstance(exc, ResponseTooLarge):
        return 63
    if isinstance(exc, RedirectLoopExceeded):
        return 47
    if isinstance(exc, HTTPStatusError):
        return 22
    if isinstance(exc, Cancelled):
        return EXIT_INTERRUPTED
    return EXIT_FAILURE


# ----------------------------
# Entry points
# ----------------------------

async def run_async(
    argv: Sequence[str],
    *,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    settings: Optional[RunnerSettings] = None,
) -> int:
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr

    own, curl_args = split_args(list(argv))
    ns = _build_parser().parse_args(own)
    opts = CliOptions(include=ns.include, write_out=ns.write_out, dotenv_path=ns.dotenv_path)

    if not curl_args:
        stderr.write("curl-runner: no URL specified\n")
        return 3

    runner = CurlRunner(
        settings=settings,
        transport=transport,
        auto_dotenv=opts.dotenv_path is not None,
        dotenv_path=opts.dotenv_path,
    )
    command = curl_args[0] if len(curl_args) == 1 and any(c.isspace() for c in curl_args[0]) else curl_args

    try:
        cfg = runner.parse_any(command)
        if cfg.verbose:
            configure_logging(logging.INFO)
        response = await runner.execute(cfg)
    except CurlRunnerError as e:
        stderr.write(f"curl-runner: {e}\n")
        return exit_code(e)

    if opts.include:
        stdout.write(format_headers(response))
    if not cfg.output_path:
        stdout.write(format_body(response))
    if opts.write_out:
        stdout.write(write_out(opts.write_out, response))
    stdout.flush()
    return EXIT_OK


def run(argv: Sequence[str], **kwargs) -> int:
    return asyncio.run(run_async(argv, **kwargs))


def main() -> None:
    """Entry point for the `curl-runner` script and `python -m tooling.curl_runner`."""
    try:
        code = run(sys.argv[1:])
    except KeyboardInterrupt:
        sys.stderr.write("curl-runner: interrupted\n")
        raise SystemExit(EXIT_INTERRUPTED)
    except BrokenPipeError:
        raise SystemExit(EXIT_OK)
    raise SystemExit(code)


if __name__ == "__main__":
    main()
