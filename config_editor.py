"""Idempotent replacement of single-line directives inside text config files."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from dataclasses import dataclass
from typing import Iterable, Optional

from errors import ConfigEditError, ConfigFileMissingError

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"


@dataclass(frozen=True)
class ConfigDirective:
    """A config line identified by the token it starts with.

    Matching is by line prefix, so a key that is a prefix of another key
    (`HOSTS` vs `HOSTS_EXTRA`) matches both.
    """

    key: str
    rendered_value: str

    def matches(self, line: str) -> bool:
        return line.startswith(self.key)

    def validate(self) -> None:
        if not self.key:
            raise ConfigEditError("Directive key must not be empty")
        if "\n" in self.rendered_value or "\r" in self.rendered_value:
            raise ConfigEditError(f"Directive {self.key} must be a single line")
        if not self.matches(self.rendered_value):
            raise ConfigEditError(f"Directive value does not start with its key {self.key!r}: {self.rendered_value!r}")


def atomic_write(path: str, content: str, mode: Optional[int] = None) -> None:
    """Write `content` to `path` through a temp file in the same directory and a rename.

    The previous file stays untouched until the rename; the temp file is
    removed if anything fails before it. Without `mode` an existing file's
    permissions are kept, new files get 0644.
    """
    path = os.path.abspath(path)
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory)
    replaced = False
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        elif os.path.exists(path):
            shutil.copymode(path, tmp_path)
        else:
            os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
        replaced = True
    finally:
        if not replaced and os.path.exists(tmp_path):
            os.unlink(tmp_path)


def apply_directive(content: str, directive: ConfigDirective) -> str:
    """Return `content` with every line matching the directive removed and the new line appended."""
    lines = content.split("\n")
    if lines[-1] == "":
        lines.pop()
    kept = [line for line in lines if not directive.matches(line)]
    kept.append(directive.rendered_value)
    return "\n".join(kept) + "\n"


def replace_directive(file_path: str, key: str, new_line: str) -> bool:
    """Replace every line starting with `key` in `file_path` by a single `new_line` at the end.

    Duplicate stale lines left by earlier partial runs are all purged.
    Returns False when the file already had the wanted content and was
    left untouched, True when it was rewritten (a `.bak` copy of the
    previous content is kept next to it).
    """
    directive = ConfigDirective(key=key, rendered_value=new_line)
    directive.validate()

    try:
        with open(file_path, encoding="utf-8", newline="") as f:
            current = f.read()
    except FileNotFoundError:
        raise ConfigFileMissingError(f"Config file not found: {file_path}") from None

    updated = apply_directive(current, directive)
    if updated == current:
        logger.info("%s already up to date in %s", key, file_path)
        return False

    atomic_write(file_path + BACKUP_SUFFIX, current, mode=stat.S_IMODE(os.stat(file_path).st_mode))
    atomic_write(file_path, updated)
    logger.info("Updated %s in %s", key, file_path)
    return True


def format_allowed_hosts(key: str, hosts: Iterable[str]) -> str:
    """Render a Python list assignment such as `ALLOWED_HOSTS = ['127.0.0.1', 'localhost']`.

    Order is kept and duplicates are dropped.
    """
    unique = list(dict.fromkeys(h for h in hosts if h))
    return f"{key} = [{', '.join(repr(h) for h in unique)}]"
