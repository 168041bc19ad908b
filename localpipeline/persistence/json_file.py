"""Locked read-modify-write access to small JSON state files."""

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """
    Hold an exclusive advisory lock for ``path``.

    The lock lives on a ``<name>.lock`` sibling so that the data file itself
    can be replaced atomically while the lock is held.

    Args:
        path: Data file being protected
    """
    lock_path = path.with_name(f"{path.name}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "w") as lock_fd:
        fcntl.flock(lock_fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)


def read_json(path: Path, default: Callable[[], Any]) -> Any:
    """
    Read a JSON document, falling back to ``default()`` when unreadable.

    A missing or corrupt file, or one whose top-level shape differs from
    ``default()``, is treated as empty state, never as an error.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return default()
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable state file {path}: {e}")
        return default()

    empty = default()
    if not isinstance(data, type(empty)):
        logger.warning(f"Ignoring state file {path} with unexpected shape")
        return empty
    return data


def write_json(path: Path, data: Any) -> None:
    """
    Atomically replace ``path`` with ``data``.

    Write errors propagate to the caller.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug(f"Wrote {path}")


@contextmanager
def locked_update(path: Path, default: Callable[[], Any]) -> Iterator[Any]:
    """
    Load, let the caller mutate, then persist a JSON document under lock.

    Yields the loaded document; whatever the caller leaves in it is written
    back when the block exits without an exception.
    """
    with file_lock(path):
        data = read_json(path, default)
        yield data
        write_json(path, data)
