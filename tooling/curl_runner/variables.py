import os
import re
import dataclasses
from typing import Callable, Mapping, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

from dotenv import load_dotenv

from .tokenizer import Token, TokenKind


# ----------------------------
# Environment lookup
# ----------------------------

@runtime_checkable
class EnvironmentLookup(Protocol):
    def lookup(self, name: str) -> Optional[str]:
        ...


class ProcessEnvironment:
    """
    Default lookup backed by the process environment.
    Resolution order:
      1) explicit mapping passed at init
      2) os.environ
      3) optional fallback callable
    """
    def __init__(
        self,
        mapping: Optional[Mapping[str, str]] = None,
        fallback: Optional[Callable[[str], Optional[str]]] = None,
        auto_dotenv: bool = False,
        dotenv_path: Optional[str] = None,
        dotenv_override: bool = False,
    ):
        if auto_dotenv:
            load_dotenv(dotenv_path=dotenv_path, override=dotenv_override)

        self._mapping = dict(mapping or {})
        self._fallback = fallback

    def lookup(self, name: str) -> Optional[str]:
        if name in self._mapping:
            return self._mapping[name]
        if name in os.environ:
            return os.environ[name]
        if self._fallback is not None:
            return self._fallback(name)
        return None


class MappingEnvironment:
    """Deterministic lookup: only the given mapping, never the process env."""

    def __init__(self, mapping: Optional[Mapping[str, str]] = None):
        self._mapping = dict(mapping or {})

    def lookup(self, name: str) -> Optional[str]:
        return self._mapping.get(name)


EnvironmentSource = Union[EnvironmentLookup, Mapping[str, str], None]


def as_lookup(source: EnvironmentSource) -> EnvironmentLookup:
    if source is None:
        return ProcessEnvironment()
    if isinstance(source, EnvironmentLookup):
        return source
    return MappingEnvironment(source)


# ----------------------------
# Expansion
# ----------------------------

_PLACEHOLDER_RE = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def expand_text(text: str, source: EnvironmentSource = None) -> str:
    """
    Replace $NAME / ${NAME} with values from `source`.
      - unresolved names are left verbatim
      - "$$" is an escape for a literal "$"
      - single pass: substituted values are never re-scanned
    """
    env = as_lookup(source)

    def sub(m: re.Match) -> str:
        if m.group(0) == "$$":
            return "$"
        name = m.group(1) or m.group(2)
        value = env.lookup(name)
        if value is None:
            return m.group(0)
        return value

    return _PLACEHOLDER_RE.sub(sub, text)


def unescape_text(text: str) -> str:
    """Collapse "$$" escapes without resolving any placeholder."""
    return _PLACEHOLDER_RE.sub(lambda m: "$" if m.group(0) == "$$" else m.group(0), text)


def expand(tokens: Sequence[Token], source: EnvironmentSource = None) -> Tuple[Token, ...]:
    """
    Expand placeholders inside VALUE and PLAIN tokens.

    FLAG tokens are passed through untouched so an expanded value can never
    turn into an option. Tokens already marked as expanded are passed
    through too, which makes a second expansion a no-op.
    """
    env = as_lookup(source)
    out = []
    for tok in tokens:
        if tok.kind is TokenKind.FLAG or tok.expanded:
            out.append(tok)
            continue
        out.append(dataclasses.replace(tok, text=expand_text(tok.text, env), expanded=True))
    return tuple(out)
