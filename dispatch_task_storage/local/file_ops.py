"""
File primitives for the key-per-file local store.

Every key is one small JSON document, rewritten whole on each save. The
helpers here guarantee a reader never sees a half-written document and
tell a full disk apart from other I/O failures, because the engine reacts
to the first by evicting old tasks.
"""

import errno
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageCapacityError, StorageIOError

TEMP_PREFIX = ".pending_"

_CAPACITY_ERRNOS = frozenset({errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)})


def _io_error(operation: str, path: Path, error: OSError) -> Exception:
    if error.errno in _CAPACITY_ERRNOS:
        return StorageCapacityError(path.stem)
    return StorageIOError(operation, str(path), error)


async def read_json(path: Path) -> Any | None:
    """Load one stored document.

    Returns:
        The decoded value, or None when the key was never written

    Raises:
        StorageIOError: The file exists but cannot be read or decoded
    """
    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            text = await f.read()
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        raise StorageIOError("read", str(path), e) from e

    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise StorageIOError("decode", str(path), e) from e


async def write_text_atomic(path: Path, content: str) -> None:
    """Replace a document in one step.

    The text goes to a sibling temp file that is flushed to disk and then
    renamed over the target, so the old value survives a crash.

    Raises:
        StorageCapacityError: The filesystem is full or over quota
        StorageIOError: Any other write failure
    """
    try:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX, suffix=".json")
        os.close(fd)
    except OSError as e:
        raise _io_error("prepare", path, e) from e

    try:
        async with aiofiles.open(temp_name, "w", encoding="utf-8") as f:
            await f.write(content)
            await f.flush()
            os.fsync(f.fileno())
        await aiofiles.os.replace(temp_name, path)
    except OSError as e:
        if await aiofiles.os.path.exists(temp_name):
            await aiofiles.os.remove(temp_name)
        raise _io_error("write", path, e) from e


async def remove_file(path: Path) -> bool:
    """Delete a document; False if it did not exist."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StorageIOError("remove", str(path), e) from e
    return True


def file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0
