"""
Filesystem edge of the runner: form attachments, cookie files, output files.
Everything else in the package works on in-memory data only.
"""
import logging
import os
from http.cookiejar import CookieJar, LoadError, MozillaCookieJar
from pathlib import Path
from typing import Optional

from .errors import ExecutionError


logger = logging.getLogger(__name__)


def read_file(path: str, *, field: Optional[str] = None) -> bytes:
    try:
        return Path(path).expanduser().read_bytes()
    except OSError as e:
        raise ExecutionError(f"cannot read {path!r}: {e.strerror or e}", field=field) from e


def load_cookie_file(path: str, into: CookieJar) -> int:
    """
    Merge a Netscape-format cookie file into `into`. A missing file is not
    an error (curl treats -b <file> the same way). Returns cookies loaded.
    """
    p = Path(path).expanduser()
    if not p.exists():
        logger.debug("cookie file %s does not exist; starting empty", p)
        return 0

    src = MozillaCookieJar(str(p))
    try:
        src.load(ignore_discard=True, ignore_expires=True)
    except (LoadError, OSError) as e:
        raise ExecutionError(f"cannot load cookie file {path!r}: {e}", field="cookie_file") from e

    count = 0
    for cookie in src:
        into.set_cookie(cookie)
        count += 1
    return count


def save_cookie_jar(jar: CookieJar, path: str) -> int:
    """Write every cookie in `jar` to a Netscape-format file (curl -c)."""
    p = Path(path).expanduser()
    out = MozillaCookieJar(str(p))
    count = 0
    for cookie in jar:
        out.set_cookie(cookie)
        count += 1
    try:
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)
        out.save(ignore_discard=True, ignore_expires=True)
    except OSError as e:
        raise ExecutionError(f"cannot write cookie jar {path!r}: {e.strerror or e}", field="cookie_jar_path") from e
    return count


def write_output(path: str, content: bytes) -> int:
    """Write a response body atomically (temp file + rename)."""
    p = Path(path).expanduser()
    tmp = p.with_name(p.name + ".part")
    try:
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_bytes(content)
        os.replace(tmp, p)
    except OSError as e:
        raise ExecutionError(f"cannot write output {path!r}: {e.strerror or e}", field="output_path") from e
    return len(content)
