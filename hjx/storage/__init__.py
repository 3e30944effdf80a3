from pathlib import Path

import click

from hjx.errors import PermissionDenied, SelectionCancelled
from hjx.storage.base import (
    StorageHandle, READ, READWRITE, GRANTED, PROMPT, DENIED,
)
from hjx.storage.local import DirectoryHandle

DEFAULT_START_DIR = Path.home() / "Documents"


def create_handle(kind, target, **kwargs):
    """Create a storage handle.

    kind: "directory" (target is a path) or "s3" (target is a bucket name;
    pass prefix= for a key prefix).
    """
    if kind == "directory":
        return DirectoryHandle(target, granted=kwargs.get("granted"))

    if kind == "s3":
        from hjx.storage.s3 import S3Handle
        return S3Handle(
            target,
            prefix=kwargs.get("prefix", ""),
            granted=kwargs.get("granted"),
            client=kwargs.get("client"),
        )

    raise ValueError(f"Unknown storage kind: {kind!r}. Use 'directory' or 's3'.")


def handle_from_dict(data, **kwargs):
    """Rebuild a handle from its to_dict() form (as stored in the cache)."""
    if not isinstance(data, dict) or "kind" not in data:
        raise ValueError(f"Not a storage handle: {data!r}")
    kind = data["kind"]
    if kind == "directory":
        return create_handle(kind, data["path"], granted=data.get("granted"))
    if kind == "s3":
        return create_handle(
            kind, data["bucket"], prefix=data.get("prefix", ""),
            granted=data.get("granted"), **kwargs,
        )
    raise ValueError(f"Unknown storage kind: {kind!r}. Use 'directory' or 's3'.")


def choose_directory(path=None, ask=None, confirm=None):
    """Let the user pick a directory. Returns an ungranted DirectoryHandle.

    Raises SelectionCancelled when the user backs out (Ctrl-C, EOF, or declines
    to create a missing directory); callers treat that as a silent no-op.
    """
    ask = ask or (lambda text, default: click.prompt(text, default=default))
    confirm = confirm or (lambda text: click.confirm(text, default=True))
    try:
        if path is None:
            path = ask("Directory to keep db.json in", str(DEFAULT_START_DIR))
        directory = Path(path).expanduser().resolve()
        if directory.exists() and not directory.is_dir():
            raise PermissionDenied(f"{directory} is not a directory")
        if not directory.exists():
            if not confirm(f"{directory} does not exist. Create it?"):
                raise SelectionCancelled()
            directory.mkdir(parents=True)
    except (click.Abort, EOFError, KeyboardInterrupt):
        raise SelectionCancelled()
    except OSError as e:
        raise PermissionDenied(f"Cannot use {path}: {e}") from e
    return DirectoryHandle(directory)
