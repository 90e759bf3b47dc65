from __future__ import annotations

from pathlib import Path

SUPPORTED_EXTENSIONS = {".txt"}


def discover_exports(
    data_dir: Path,
    supported_extensions: set[str] | None = None,
) -> list[Path]:
    if not data_dir.exists():
        raise FileNotFoundError(f"Export directory not found: {data_dir}")
    if not data_dir.is_dir():
        raise NotADirectoryError(f"Export path is not a directory: {data_dir}")

    extensions = supported_extensions or SUPPORTED_EXTENSIONS
    return sorted(
        path
        for path in data_dir.rglob("*")
        if path.is_file() and path.suffix.lower() in extensions
    )
