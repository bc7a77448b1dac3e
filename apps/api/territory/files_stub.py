from __future__ import annotations

import tempfile
import uuid
from pathlib import Path

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

_FILE_INDEX: dict[uuid.UUID, tuple[Path, str, str]] = {}


def _base_dir() -> Path:
    base = Path(tempfile.gettempdir()) / "territory_files_stub"
    base.mkdir(parents=True, exist_ok=True)
    return base


def store_bytes(content: bytes, filename: str, content_type: str) -> uuid.UUID:
    file_id = uuid.uuid4()
    safe_name = filename or "file.bin"
    extension = Path(safe_name).suffix or ".bin"
    file_path = _base_dir() / f"{file_id}{extension}"
    file_path.write_bytes(content)
    _FILE_INDEX[file_id] = (file_path, safe_name, content_type)
    return file_id


def get_bytes(file_id: uuid.UUID) -> bytes:
    entry = _FILE_INDEX.get(file_id)
    if entry is None or not entry[0].exists():
        raise FileNotFoundError(f"file_id not found: {file_id}")
    return entry[0].read_bytes()


def get_metadata(file_id: uuid.UUID) -> tuple[str, str]:
    entry = _FILE_INDEX.get(file_id)
    if entry is None:
        raise FileNotFoundError(f"file_id not found: {file_id}")
    return entry[1], entry[2]


def discard(file_id: uuid.UUID) -> None:
    entry = _FILE_INDEX.pop(file_id, None)
    if entry is not None and entry[0].exists():
        entry[0].unlink()
