"""
JSON file operations for the inventory store.

Provides async read/write operations with:
- Atomic writes using ``<path>.tmp`` + rename
- fsync before rename so a crash never leaves a half-written document
- Owner-only permissions on the written file
"""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StoreIOError

DEFAULT_FILE_MODE = 0o600


def temp_path_for(path: Path) -> Path:
    """Sibling path used for the in-progress write of ``path``."""
    return path.with_name(path.name + ".tmp")


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary.

    Args:
        path: Directory path to ensure exists
    """
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StoreIOError("create_directory", str(path), e) from e


async def read_json(path: Path) -> Any | None:
    """Read a JSON file.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON data or None if the file doesn't exist or is blank

    Raises:
        StoreIOError: If the file cannot be read or parsed
    """
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
            return json.loads(content) if content.strip() else None
    except json.JSONDecodeError as e:
        raise StoreIOError("parse_json", str(path), e) from e
    except OSError as e:
        raise StoreIOError("read_json", str(path), e) from e


async def write_json_atomic(path: Path, data: Any, mode: int = DEFAULT_FILE_MODE) -> None:
    """Write JSON file atomically using ``<path>.tmp`` + rename.

    Callers must serialize writes to the same path; the temp name is fixed.

    Args:
        path: Target path for JSON file
        data: Data to serialize as JSON
        mode: Permission bits for the written file
    """
    await ensure_directory(path.parent)

    temp_path = temp_path_for(path)
    try:
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2, default=_json_serializer))
            await f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)

        # Atomic rename
        await aiofiles.os.replace(temp_path, path)
    except Exception as e:
        # Clean up temp file on error
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise StoreIOError("write_json", str(path), e) from e


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not handled by default.

    Args:
        obj: Object to serialize

    Returns:
        JSON-serializable representation
    """
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
