import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List, TypeVar

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def batched(values: Iterable[T], size: int) -> List[List[T]]:
    if size < 1:
        raise ValueError("batch size must be positive")
    batches: List[List[T]] = []
    batch: List[T] = []
    for value in values:
        batch.append(value)
        if len(batch) >= size:
            batches.append(batch)
            batch = []
    if batch:
        batches.append(batch)
    return batches


def format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def from_unix(value: Any) -> datetime:
    try:
        seconds = int(value or 0)
    except (TypeError, ValueError):
        seconds = 0
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def save_json(path: Path, data: Any, *, indent: int | str = 2, sort_keys: bool = True) -> None:
    ensure_dir(path.parent)
    temp_path = path.with_suffix(f"{path.suffix}.tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        json.dump(data, handle, ensure_ascii=False, indent=indent, sort_keys=sort_keys)
        handle.write("\n")
    temp_path.replace(path)


def overwrite_symlink(target: Path, link_name: Path) -> None:
    """Point ``link_name`` at ``target``, replacing whatever is there.

    The link is created under a temporary name next to ``link_name`` and then
    renamed over it, so readers never observe a missing link.
    """
    ensure_dir(link_name.parent)
    for _ in range(5):
        temp_name = Path(
            tempfile.mktemp(prefix=f".{link_name.name}.", dir=str(link_name.parent))
        )
        try:
            os.symlink(target, temp_name)
        except FileExistsError:
            continue
        break
    else:
        raise FileExistsError(f"could not create temporary link next to {link_name}")
    try:
        os.replace(temp_name, link_name)
    except OSError:
        temp_name.unlink(missing_ok=True)
        raise
