"""Atomic file I/O operations."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a best-effort write. Callers decide whether a failure matters."""
    ok: bool
    path: Path
    error: Optional[str] = None


def atomic_write_json(file_path: Path, content: str, max_retries: int = 3) -> None:
    """
    Atomically write content to a file using temp file + rename.

    Readers either see the previous file or the new one, never a partial
    write. The parent directory is created if needed.

    Args:
        file_path: Target file path
        content: Content to write (typically JSON string)
        max_retries: Maximum number of retry attempts on failure

    Raises:
        OSError: If write fails after all retries
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    # PID suffix avoids temp file collisions between processes
    tmp_file = file_path.with_suffix(f'{file_path.suffix}.tmp.{os.getpid()}')

    last_error = None
    for attempt in range(max_retries):
        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(file_path)
            return
        except OSError as e:
            last_error = e
            if attempt < max_retries - 1:
                logger.warning(
                    f"Failed to write {file_path} (attempt {attempt + 1}/{max_retries}): {e}"
                )
            continue
        finally:
            if tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError:
                    pass

    logger.error(f"Failed to write {file_path} after {max_retries} attempts: {last_error}")
    raise last_error


def try_write_json(file_path: Path, content: str) -> WriteResult:
    """Atomic write that reports failure instead of raising."""
    try:
        atomic_write_json(file_path, content, max_retries=1)
    except OSError as e:
        return WriteResult(ok=False, path=file_path, error=str(e))
    return WriteResult(ok=True, path=file_path)


def try_write_model(
    file_path: Path, model: BaseModel, indent: int = 2, by_alias: bool = False
) -> WriteResult:
    """Serialize a Pydantic model to JSON and write it with try_write_json."""
    return try_write_json(file_path, model.model_dump_json(indent=indent, by_alias=by_alias))
