"""Filesystem tool definitions and implementations for the agent."""

import os
import shutil
from functools import wraps

from .paths import validate_path, resolve_path
from .registry import ToolDescriptor, ToolRegistry

MAX_READ_BYTES = 100 * 1024  # 100 KB


class ToolError(Exception):
    """A tool failure whose message is already phrased for the model."""


class PathNotFoundError(ToolError):
    def __init__(self, kind: str, path: str, suggestion=None):
        self.path = path
        self.suggestion = suggestion
        message = f"{kind} not found: '{path}'"
        if suggestion is not None:
            message += f". Did you mean '{suggestion}'?"
        super().__init__(message)


class WrongKindError(ToolError):
    """A file was given where a directory was expected, or the reverse."""


class FileTooLargeError(ToolError):
    def __init__(self, size: int):
        self.size = size
        super().__init__(
            f"File is too large ({size / 1024:.1f}KB). "
            f"Maximum supported size is {MAX_READ_BYTES // 1024}KB."
        )


class DirectoryNotEmptyError(ToolError):
    def __init__(self, path: str, item_count: int):
        self.path = path
        self.item_count = item_count
        super().__init__(
            f"Directory '{path}' is not empty (contains {item_count} items). "
            "Use recursive=true to delete directory and all contents, "
            "or remove contents first."
        )


READ_FILE_TOOL = {
    "name": "read_file",
    "description": (
        "Reads and returns the contents of a file at the specified path. "
        "Use this to examine file contents, check configurations, or read source code. "
        "Supports relative paths (./file), home directory (~), and absolute paths."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": (
                    "Path to the file to read. Examples: './config.json', "
                    "'~/documents/notes.txt', '/etc/hosts'"
                ),
            },
        },
        "required": ["file_path"],
    },
}

WRITE_FILE_TOOL = {
    "name": "write_file",
    "description": (
        "Creates or overwrites a file with the specified contents, "
        "creating parent directories as needed. "
        "Existing files are overwritten; use read_file first if that matters."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "Path where the file will be created/overwritten.",
            },
            "contents": {
                "type": "string",
                "description": "The text content to write to the file.",
            },
        },
        "required": ["file_path", "contents"],
    },
}

LIST_DIRECTORY_TOOL = {
    "name": "list_directory",
    "description": (
        "Lists all files and folders in a directory, including hidden ones. "
        "Returns an array of names. Use this to explore directory structure "
        "before reading or writing files. Use '.' for the current directory."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "directory_path": {
                "type": "string",
                "description": (
                    "Path to the directory to list. "
                    "Examples: '.', './src', '~/projects'"
                ),
            },
        },
        "required": ["directory_path"],
    },
}

DELETE_FILE_TOOL = {
    "name": "delete_file",
    "description": (
        "Permanently deletes a file at the specified path. "
        "This action is irreversible. "
        "Use list_directory first to verify the file exists."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": (
                    "Path to the file to delete. "
                    "Examples: './temp.txt', '~/old-file.log'"
                ),
            },
        },
        "required": ["file_path"],
    },
}

DELETE_DIRECTORY_TOOL = {
    "name": "delete_directory",
    "description": (
        "Permanently deletes a directory and optionally all its contents. "
        "This action is irreversible. "
        "Use list_directory first to verify contents before deletion."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "directory_path": {
                "type": "string",
                "description": (
                    "Path to the directory to delete. "
                    "Examples: './temp', '~/old-folder'"
                ),
            },
            "recursive": {
                "type": "boolean",
                "description": (
                    "If true, deletes the directory and all contents. "
                    "If false, only deletes it when empty. Default: false"
                ),
                "default": False,
            },
        },
        "required": ["directory_path"],
    },
}


def _read_file(file_path: str, base_dir: str | None = None) -> str:
    """Return the full text of a file."""
    check = validate_path(file_path, base_dir)
    if not check.exists:
        raise PathNotFoundError("File", file_path, check.suggestion)

    if check.resolved.is_dir():
        raise WrongKindError(
            f"'{file_path}' is a directory, not a file. Use list_directory instead."
        )

    size = check.resolved.stat().st_size
    if size > MAX_READ_BYTES:
        raise FileTooLargeError(size)

    # Decode without newline translation so content round-trips exactly.
    return check.resolved.read_bytes().decode("utf-8")


def _write_file(file_path: str, contents: str, base_dir: str | None = None) -> str:
    """Create or overwrite a file, creating missing parent directories."""
    resolved = resolve_path(file_path, base_dir)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_bytes(contents.encode("utf-8"))
    return f"Successfully wrote {len(contents)} characters to '{file_path}'"


def _list_directory(directory_path: str, base_dir: str | None = None) -> list[str]:
    check = validate_path(directory_path, base_dir)
    if not check.exists:
        raise PathNotFoundError("Directory", directory_path, check.suggestion)

    if not check.resolved.is_dir():
        raise WrongKindError(
            f"'{directory_path}' is a file, not a directory. Use read_file instead."
        )

    return os.listdir(check.resolved)


def _delete_file(file_path: str, base_dir: str | None = None) -> str:
    check = validate_path(file_path, base_dir)
    if not check.exists:
        raise PathNotFoundError("File", file_path, check.suggestion)

    if check.resolved.is_dir():
        raise WrongKindError(
            f"'{file_path}' is a directory, not a file. Use delete_directory instead."
        )

    check.resolved.unlink()
    return f"Successfully deleted file: '{file_path}'"


def _delete_directory(
    directory_path: str, recursive: bool = False, base_dir: str | None = None
) -> str:
    """Delete a directory; non-empty ones need recursive=True."""
    check = validate_path(directory_path, base_dir)
    if not check.exists:
        raise PathNotFoundError("Directory", directory_path, check.suggestion)

    if not check.resolved.is_dir():
        raise WrongKindError(
            f"'{directory_path}' is a file, not a directory. Use delete_file instead."
        )

    if not recursive:
        entries = os.listdir(check.resolved)
        if entries:
            raise DirectoryNotEmptyError(directory_path, len(entries))
        check.resolved.rmdir()
        return f"Successfully deleted empty directory: '{directory_path}'"

    shutil.rmtree(check.resolved)
    return f"Successfully deleted directory and all contents: '{directory_path}'"


def _bind_base_dir(fn, base_dir):
    """Fix base_dir for fn; callers cannot pass their own."""

    @wraps(fn)
    def bound(**kwargs):
        return fn(**kwargs, base_dir=base_dir)

    return bound


def build_registry(base_dir: str | None = None) -> ToolRegistry:
    """Registry of the five filesystem tools.

    Relative paths given to the tools resolve against base_dir (the
    process working directory when None). Reads and listings run freely;
    writes and deletes always require confirmation.
    """
    specs = [
        (READ_FILE_TOOL, _read_file, False),
        (WRITE_FILE_TOOL, _write_file, True),
        (LIST_DIRECTORY_TOOL, _list_directory, False),
        (DELETE_FILE_TOOL, _delete_file, True),
        (DELETE_DIRECTORY_TOOL, _delete_directory, True),
    ]
    return ToolRegistry(
        ToolDescriptor(
            name=decl["name"],
            description=decl["description"],
            parameters=decl["parameters"],
            function=_bind_base_dir(fn, base_dir),
            requires_confirmation=confirm,
        )
        for decl, fn, confirm in specs
    )
