"""Small file helpers shared by the stores: atomic writes and JSONL append/read."""

import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@contextmanager
def atomic_write(path: Path, encoding: str = "utf-8") -> Iterator[IO[str]]:
    """Write to a temp file in the same directory, then rename over ``path``.

    Readers never observe a half-written file; on error the temp file is removed
    and the original is left untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            yield f
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def dump_record(record: BaseModel) -> str:
    """Serialize a record to one JSON line.

    ``model_dump()`` + ``json.dumps(default=str)`` rather than
    ``model_dump_json()`` so opaque values (executor outputs, fact values)
    degrade to their string form instead of failing the write.
    """
    return json.dumps(record.model_dump(by_alias=True), ensure_ascii=False, default=str)


def append_jsonl(path: Path, record: BaseModel) -> None:
    """Append one JSONL line. Sync; data is on disk as soon as it is logged."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(dump_record(record) + "\n")


def read_jsonl_as_models(path: Path, model_cls: type[ModelT]) -> list[ModelT]:
    """Parse a JSONL file into a list of Pydantic model instances.

    Skips blank lines and corrupt JSON lines (partial writes from crashes).
    """
    results: list[ModelT] = []
    if not path.exists():
        return results
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    results.append(model_cls.model_validate(json.loads(line)))
                except Exception as e:
                    logger.warning("Skipping corrupt JSONL line in %s: %s", path, e)
                    continue
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
    return results


def read_json(path: Path) -> dict[str, Any] | None:
    """Read and parse a JSON file. Returns None if missing or corrupt."""
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to read %s: %s", path, e)
        return None
