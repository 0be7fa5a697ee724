"""Path resolution for the filesystem tools."""

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class PathCheck:
    exists: bool
    resolved: Path
    suggestion: Path | None = None


def resolve_path(path: str, base_dir: str | None = None) -> Path:
    """Turn a user-supplied path into a canonical absolute path.

    Surrounding whitespace is stripped and a leading ~ is replaced by the
    current user's home directory ("~notes.txt" is home/notes.txt; other
    users' homes are not looked up). Relative paths are resolved against
    base_dir (the process working directory when base_dir is None).
    """
    text = path.strip()
    if text.startswith("~"):
        expanded = Path.home() / text[1:].lstrip("/")
    else:
        expanded = Path(text)
    if not expanded.is_absolute() and base_dir is not None:
        expanded = Path(base_dir).expanduser() / expanded
    return expanded.resolve()


def suggest_similar(resolved: Path) -> Path | None:
    """Look for a near match among the parent directory's direct entries.

    Case-insensitive substring match in either direction. Only the
    immediate parent is scanned.
    """
    parent = resolved.parent
    wanted = resolved.name.lower()
    if not wanted or not parent.is_dir():
        return None
    try:
        entries = sorted(os.listdir(parent))
    except OSError:
        return None
    for entry in entries:
        candidate = entry.lower()
        if wanted in candidate or candidate in wanted:
            return parent / entry
    return None


def validate_path(path: str, base_dir: str | None = None) -> PathCheck:
    resolved = resolve_path(path, base_dir)
    if resolved.exists():
        return PathCheck(exists=True, resolved=resolved)
    return PathCheck(
        exists=False, resolved=resolved, suggestion=suggest_similar(resolved)
    )
