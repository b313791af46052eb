"""
JSONL file operations for transcript storage.

Provides:
- Durable appends (flush + fsync before returning)
- Torn-write repair: a trailing fragment left by a crash is terminated
  before the next append so it stays a single skippable line
- Lenient line-by-line reading that reports undecodable lines instead of
  aborting the read
"""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError


class UndecodableLine:
    """A raw line that is not valid JSON."""

    __slots__ = ("line_number", "raw", "error")

    def __init__(self, line_number: int, raw: str, error: Exception):
        self.line_number = line_number
        self.raw = raw
        self.error = error


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary."""
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def file_exists(path: Path) -> bool:
    try:
        return await aiofiles.os.path.exists(path)
    except OSError:
        return False


async def ends_with_newline(path: Path) -> bool:
    """Whether the file is empty or its last byte is a newline."""
    try:
        size = await aiofiles.os.path.getsize(path)
    except FileNotFoundError:
        return True
    if size == 0:
        return True
    async with aiofiles.open(path, "rb") as f:
        await f.seek(size - 1)
        return await f.read(1) == b"\n"


async def file_size(path: Path) -> int:
    """Size in bytes, 0 for a missing file."""
    try:
        return await aiofiles.os.path.getsize(path)
    except FileNotFoundError:
        return 0


async def truncate_file(path: Path, size: int) -> None:
    """Cut a file back to ``size`` bytes and fsync.

    Used to undo a failed append so a retry starts on a clean line.
    """
    async with aiofiles.open(path, "r+b") as f:
        await f.truncate(size)
        await f.flush()
        os.fsync(f.fileno())


async def append_lines(path: Path, records: list[dict[str, Any]], *, repair: bool = False) -> None:
    """Append JSON objects as lines and fsync.

    Args:
        path: Path to JSONL file
        records: Objects to append, one line each
        repair: Terminate a torn trailing line before writing

    Raises:
        OSError: Propagated so the caller can apply its retry policy.
    """
    payload = "".join(json.dumps(r, default=_json_serializer, ensure_ascii=False) + "\n" for r in records)
    if repair and not await ends_with_newline(path):
        payload = "\n" + payload

    async with aiofiles.open(path, "a", encoding="utf-8") as f:
        await f.write(payload)
        await f.flush()
        os.fsync(f.fileno())


async def iter_jsonl_lenient(path: Path) -> AsyncIterator[tuple[int, Any] | UndecodableLine]:
    """Iterate over a JSONL file, yielding (line_number, value) per line.

    Lines that fail to decode are yielded as ``UndecodableLine`` so the caller
    decides how to report them. Blank lines are skipped. Line numbers are
    1-based physical line numbers.
    """
    if not await file_exists(path):
        return

    try:
        async with aiofiles.open(path, encoding="utf-8", errors="replace") as f:
            line_number = 0
            async for raw in f:
                line_number += 1
                line = raw.strip()
                if not line:
                    continue
                try:
                    yield line_number, json.loads(line)
                except json.JSONDecodeError as e:
                    yield UndecodableLine(line_number, line, e)
    except OSError as e:
        raise StorageIOError("read_jsonl", str(path), e) from e


async def read_tail_bytes(path: Path, max_bytes: int) -> list[str]:
    """Read complete lines from the last ``max_bytes`` of a file.

    The first line is dropped when the window starts mid-line.
    """
    try:
        size = await aiofiles.os.path.getsize(path)
    except FileNotFoundError:
        return []

    start = max(0, size - max_bytes)
    try:
        async with aiofiles.open(path, "rb") as f:
            if start > 0:
                await f.seek(start - 1)
                chunk = await f.read()
                # chunk[0] is the byte before the window: a newline there means
                # the window begins on a line boundary
                starts_clean = chunk[:1] == b"\n"
                chunk = chunk[1:]
            else:
                chunk = await f.read()
                starts_clean = True
    except OSError as e:
        raise StorageIOError("read_tail", str(path), e) from e

    lines = chunk.decode("utf-8", errors="replace").split("\n")
    if not starts_clean:
        lines = lines[1:]
    return [line for line in lines if line.strip()]


async def list_files(path: Path, suffix: str) -> list[Path]:
    """List files in a directory with the given suffix, sorted by name."""
    try:
        if not await aiofiles.os.path.exists(path):
            return []
        entries = await aiofiles.os.listdir(path)
    except OSError as e:
        raise StorageIOError("list_files", str(path), e) from e
    return sorted(path / entry for entry in entries if entry.endswith(suffix))


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not handled by default."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
