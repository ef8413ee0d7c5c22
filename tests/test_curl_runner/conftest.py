import pytest
import httpx

import sys, os
target_path = os.path.abspath(os.path.join(os.path.dirname(os.path.abspath(__file__)), "../.."))
if target_path not in sys.path:
    sys.path.insert(0, target_path)

from tooling.curl_runner import CurlRunner, MappingEnvironment, RunnerSettings


@pytest.fixture(scope="session")
def settings() -> RunnerSettings:
    # Ignore any local .env so tests are deterministic
    return RunnerSettings(_env_file=None)


@pytest.fixture(scope="session")
def env() -> MappingEnvironment:
    return MappingEnvironment({
        "TOKEN": "secret123",
        "API_HOST": "api.example.com",
        "USER": "alice",
        "PASS": "s3cr3t",
    })


@pytest.fixture(scope="session")
def runner(env, settings) -> CurlRunner:
    # Parsing only; no transport needed
    return CurlRunner(env=env, settings=settings)


@pytest.fixture
def make_runner(env, settings):
    """
    Build a CurlRunner whose requests go to `handler` through
    httpx.MockTransport (no real network).
    """
    def _make(handler, **kwargs) -> CurlRunner:
        return CurlRunner(
            env=kwargs.pop("env", env),
            settings=kwargs.pop("settings", settings),
            transport=httpx.MockTransport(handler),
            **kwargs,
        )
    return _make


class CallCounter:
    def __init__(self):
        self.calls = 0
        self.requests: list[httpx.Request] = []

    def record(self, request: httpx.Request) -> int:
        self.calls += 1
        self.requests.append(request)
        return self.calls


@pytest.fixture
def counter() -> CallCounter:
    return CallCounter()
