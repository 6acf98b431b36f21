"""Atomic file writes.

Pattern: write to a temp sibling, fsync, validate, then ``os.replace`` onto the
target. The target is either left untouched or holds the complete new content;
a partially written file is never visible at the target path.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from prism_orchestrator.core.errors import StorageError, ValidationError
from prism_orchestrator.state.codec import decode, dump_yaml, load_yaml, roundtrip_check

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

TEMP_MARKER = ".tmp."


def ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StorageError(f"Cannot create directory ({exc.strerror})", path) from exc


def write_atomic(
    path: Path,
    content: str,
    validate: Callable[[str], object] | None = None,
) -> None:
    """Write ``content`` to ``path`` atomically.

    Args:
        path: Target file.
        content: Full file content.
        validate: Optional check run on the content after it reached the temp
            file and before the rename; any exception it raises aborts the write.

    Raises:
        StorageError: If writing or renaming fails.
        ValidationError: If ``validate`` rejects the content.
    """
    ensure_dir(path.parent)
    try:
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f"{path.name}{TEMP_MARKER}")
    except OSError as exc:
        raise StorageError(f"Cannot create temporary file ({exc.strerror})", path) from exc

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())

        if validate is not None:
            validate(content)

        os.replace(tmp_path, path)
    except BaseException as exc:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove temporary file", extra={"path": str(tmp_path)})
        if isinstance(exc, OSError):
            raise StorageError(f"Atomic write failed ({exc.strerror or exc})", path) from exc
        raise


def read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise
    except (OSError, UnicodeDecodeError) as exc:
        raise StorageError(f"Cannot read file ({exc})", path) from exc


def read_yaml(path: Path) -> Any:
    return load_yaml(read_text(path), schema_name=path.name)


def read_json(path: Path) -> Any:
    text = read_text(path)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"not parseable as JSON ({exc})", path.name, path=path) from exc


def read_model(path: Path, model_cls: type[ModelT]) -> ModelT:
    """Read and validate a YAML file against ``model_cls``."""

    try:
        return decode(read_text(path), model_cls)
    except ValidationError as exc:
        exc.path = str(path)
        raise


def write_yaml(path: Path, data: Any) -> None:
    write_atomic(path, dump_yaml(data), validate=lambda text: load_yaml(text, schema_name=path.name))


def write_json(path: Path, data: Any, *, pretty: bool = True) -> None:
    content = json.dumps(data, indent=2 if pretty else None, ensure_ascii=False) + "\n"
    write_atomic(path, content, validate=json.loads)


def write_model(path: Path, value: BaseModel) -> None:
    """Write a model as YAML after proving it survives an encode/decode round-trip."""

    text = roundtrip_check(value)
    write_atomic(path, text, validate=lambda content: decode(content, type(value)))
