from __future__ import annotations

import os
import tempfile


def atomic_write(path: str, content: str, mode: int = 0o644) -> None:
    """Replace ``path`` with ``content`` in one rename so readers never see a partial file."""
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".pnr-", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def read_text(path: str) -> str | None:
    try:
        with open(path, encoding="utf-8") as fh:
            return fh.read()
    except (FileNotFoundError, IsADirectoryError):
        return None


def remove_file(path: str) -> bool:
    """Delete ``path``; returns False if it was already gone."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
