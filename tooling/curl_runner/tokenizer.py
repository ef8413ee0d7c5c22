from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from . import flags
from .errors import UnterminatedQuote, DanglingEscape


class TokenKind(str, Enum):
    FLAG = "flag"
    VALUE = "value"
    PLAIN = "plain"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    position: int
    expanded: bool = False


_WHITESPACE = " \t\r\n"

# A literal dollar produced by quoting or escaping is emitted doubled so the
# expander (or the converter, for unexpanded tokens) turns it back into "$"
# instead of treating it as the start of a placeholder.
_LITERAL_DOLLAR = "$$"


# ----------------------------
# Word splitting
# ----------------------------

def _continuation_end(raw: str, at: int) -> Optional[int]:
    """
    Offset just past the line break when raw[at:] is only blanks up to it,
    i.e. the backslash before `at` continues the line. Trailing blanks
    after the backslash are not an escaped space.
    """
    j = at
    n = len(raw)
    while j < n and raw[j] in " \t":
        j += 1
    if j < n and raw[j] == "\n":
        return j + 1
    if j + 1 < n and raw[j] == "\r" and raw[j + 1] == "\n":
        return j + 2
    return None


def _split_words(raw: str) -> List[Tuple[str, int]]:
    """
    Split shell-like text into (word, start_offset) pairs.

    Rules:
      - whitespace and newlines separate words
      - '#' at the start of a word comments out the rest of the line
      - backslash, optional blanks, newline is a continuation and
        separates like a space
      - '...' is fully literal
      - "..." honours \\" \\\\ \\$ and drops backslash-newline
      - outside quotes a backslash escapes the next character
    """
    words: List[Tuple[str, int]] = []
    buf: List[str] = []
    in_word = False
    start = 0
    i = 0
    n = len(raw)

    def flush() -> None:
        nonlocal in_word, buf
        if in_word:
            words.append(("".join(buf), start))
        buf = []
        in_word = False

    def begin(at: int) -> None:
        nonlocal in_word, start
        if not in_word:
            in_word = True
            start = at

    while i < n:
        c = raw[i]

        if c in _WHITESPACE:
            flush()
            i += 1
            continue

        if c == "#" and not in_word:
            nl = raw.find("\n", i)
            i = n if nl < 0 else nl
            continue

        if c == "\\":
            if i + 1 >= n:
                raise DanglingEscape(i)
            end = _continuation_end(raw, i + 1)
            if end is not None:
                flush()
                i = end
                continue
            nxt = raw[i + 1]
            begin(i)
            buf.append(_LITERAL_DOLLAR if nxt == "$" else nxt)
            i += 2
            continue

        if c == "'":
            begin(i)
            close = raw.find("'", i + 1)
            if close < 0:
                raise UnterminatedQuote("'", i)
            buf.append(raw[i + 1:close].replace("$", _LITERAL_DOLLAR))
            i = close + 1
            continue

        if c == '"':
            begin(i)
            j = i + 1
            closed = False
            while j < n:
                d = raw[j]
                if d == "\\" and j + 1 < n:
                    e = raw[j + 1]
                    if e in ('"', "\\"):
                        buf.append(e)
                        j += 2
                        continue
                    if e == "$":
                        buf.append(_LITERAL_DOLLAR)
                        j += 2
                        continue
                    if e == "\n":
                        j += 2
                        continue
                    buf.append(d)
                    j += 1
                    continue
                if d == '"':
                    closed = True
                    break
                buf.append(d)
                j += 1
            if not closed:
                raise UnterminatedQuote('"', i)
            i = j + 1
            continue

        begin(i)
        buf.append(c)
        i += 1

    flush()
    return words


# ----------------------------
# Classification
# ----------------------------

def _classify(words: Sequence[Tuple[str, int]]) -> Tuple[Token, ...]:
    if words and words[0][0] == "curl":
        words = words[1:]

    out: List[Token] = []
    expect_value = False

    for text, pos in words:
        if expect_value:
            out.append(Token(TokenKind.VALUE, text, pos))
            expect_value = False
            continue

        if not flags.looks_like_flag(text):
            out.append(Token(TokenKind.PLAIN, text, pos))
            continue

        resolved = flags.resolve(text)
        if not resolved:
            # Unknown; the converter reports it with this position.
            out.append(Token(TokenKind.FLAG, text, pos))
            continue

        # Split "--data=x" and "-XPOST" so attached values become VALUE
        # tokens and flag tokens only ever hold a registry name.
        for spec, attached in resolved:
            name = _spelling(text, spec)
            out.append(Token(TokenKind.FLAG, name, pos))
            if attached is not None:
                out.append(Token(TokenKind.VALUE, attached, pos))
            elif spec.takes_value:
                expect_value = True

    return tuple(out)


def _spelling(text: str, spec: flags.FlagSpec) -> str:
    if text in spec.names:
        return text
    if text.startswith("--"):
        return text.split("=", 1)[0]
    # short cluster member: prefer the short name
    for name in spec.names:
        if not name.startswith("--"):
            return name
    return spec.names[0]


def tokenize(raw: str) -> Tuple[Token, ...]:
    """
    Split a curl command string into classified tokens.
    Raises UnterminatedQuote / DanglingEscape on unbalanced input.
    """
    return _classify(_split_words(raw))


def classify_args(args: Sequence[str]) -> Tuple[Token, ...]:
    """
    Classify a pre-split argument vector (no quote processing).
    Positions are argument indices.
    """
    return _classify([(str(a), idx) for idx, a in enumerate(args)])
