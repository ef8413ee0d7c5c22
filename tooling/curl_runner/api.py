import logging
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

import httpx
from dotenv import load_dotenv

from .config import RequestConfig
from .deadline import CancellationSignal
from .engine import CookieSource, Response, execute
from .files import save_cookie_jar, write_output
from .settings import RunnerSettings
from .tokenizer import Token, classify_args, tokenize
from .converter import convert
from .validation import ValidationLimits, validate
from .variables import EnvironmentSource, MappingEnvironment, as_lookup, expand


logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]


class CurlRunner:
    """
    Main entrypoint.

    - parse(command): tokenize -> expand -> convert -> validate
    - parse_args(args): the same pipeline for a pre-split argument list
    - execute(cfg): validate and run a RequestConfig (clones included)
    - run(command): parse + execute

    A runner is safe to share between concurrent tasks: it holds no
    per-call state. Configs it returns are frozen; use cfg.clone(...) for
    per-call variations.
    """

    def __init__(
        self,
        *,
        env: EnvironmentSource = None,
        settings: Optional[RunnerSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cookies: CookieSource = None,
        auto_dotenv: bool = False,
        dotenv_path: Optional[str] = None,
        dotenv_override: bool = False,
    ):
        if auto_dotenv:
            load_dotenv(dotenv_path=dotenv_path, override=dotenv_override)

        self.settings = settings or RunnerSettings()
        self.env = as_lookup(env)
        self.transport = transport
        self.cookies = cookies
        self.limits = ValidationLimits.from_settings(self.settings)

    # --- parsing ---

    def tokens(self, command: Command) -> Tuple[Token, ...]:
        """Classified and expanded tokens for a command string or argv."""
        raw = tokenize(command) if isinstance(command, str) else classify_args(command)
        return expand(raw, self.env)

    def parse(self, command: str) -> RequestConfig:
        return validate(convert(self.tokens(command)), self.limits)

    def parse_args(self, args: Sequence[str]) -> RequestConfig:
        return validate(convert(self.tokens(list(args))), self.limits)

    def parse_any(self, command: Command) -> RequestConfig:
        if isinstance(command, str):
            return self.parse(command)
        return self.parse_args(command)

    # --- execution ---

    async def execute(self, cfg: RequestConfig, signal: Optional[CancellationSignal] = None) -> Response:
        response = await execute(
            cfg,
            signal,
            transport=self.transport,
            cookies=self.cookies,
            settings=self.settings,
            limits=self.limits,
        )

        if cfg.cookie_jar_path:
            n = save_cookie_jar(response.cookies.jar, cfg.cookie_jar_path)
            logger.debug("saved %s cookies to %s", n, cfg.cookie_jar_path)

        if cfg.fail_on_error:
            response.raise_for_status()

        if cfg.output_path:
            n = write_output(cfg.output_path, response.content)
            logger.debug("wrote %s bytes to %s", n, cfg.output_path)

        return response

    async def run(self, command: Command, signal: Optional[CancellationSignal] = None) -> Response:
        return await self.execute(self.parse_any(command), signal)


# ----------------------------
# Module-level shortcuts
# ----------------------------

def _runner(
    env: EnvironmentSource = None,
    settings: Optional[RunnerSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    cookies: CookieSource = None,
) -> CurlRunner:
    return CurlRunner(env=env, settings=settings, transport=transport, cookies=cookies)


async def curl_command(
    command: str,
    *,
    signal: Optional[CancellationSignal] = None,
    **options: Any,
) -> Response:
    """Run one shell-syntax curl command (variables from the process env)."""
    return await _runner(**options).run(command, signal)


async def curl_args(
    args: Sequence[str],
    *,
    signal: Optional[CancellationSignal] = None,
    **options: Any,
) -> Response:
    """Run a pre-split argument list; no shell quoting is applied."""
    return await _runner(**options).run(list(args), signal)


async def curl(*command: str, signal: Optional[CancellationSignal] = None, **options: Any) -> Response:
    """
    curl("curl -H 'X: 1' https://x.test")        -> command string
    curl("-H", "X: 1", "https://x.test")         -> argument list
    """
    if not command:
        raise ValueError("curl() needs a command string or arguments")
    if len(command) == 1:
        return await curl_command(command[0], signal=signal, **options)
    return await curl_args(command, signal=signal, **options)


async def curl_with_vars(
    command: Command,
    variables: Mapping[str, str],
    *,
    signal: Optional[CancellationSignal] = None,
    **options: Any,
) -> Response:
    """Expand $NAME placeholders from `variables` only, never the process env."""
    options["env"] = MappingEnvironment(variables)
    return await _runner(**options).run(command, signal)


async def curl_text(*command: str, **options: Any) -> str:
    response = await curl(*command, **options)
    return response.text


async def curl_bytes(*command: str, **options: Any) -> bytes:
    response = await curl(*command, **options)
    return response.content


async def curl_json(*command: str, **options: Any) -> Any:
    response = await curl(*command, **options)
    return response.json()


async def curl_download(path: str, *command: str, **options: Any) -> Response:
    """Run the command and write the body to `path` (like -o)."""
    response = await curl(*command, **options)
    write_output(path, response.content)
    return response
