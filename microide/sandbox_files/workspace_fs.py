from __future__ import annotations

import contextlib
import os
import posixpath
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any, BinaryIO

from microide.sandbox_files.policy import (
    InvalidPath,
    PathResolver,
    normalize_public_path,
)

_CHUNK_SIZE = 64 * 1024


def safe_file_name(name: str | None) -> str:
    # Uploaded names are client-controlled; keep only the last component.
    raw = (name or "").replace("\\", "/")
    base = posixpath.basename(raw.rstrip("/"))
    if not base or base in (".", "..") or "\x00" in base:
        raise InvalidPath("invalid file name")
    return base


def _iter_chunks(fh: BinaryIO, chunk_size: int) -> Iterator[bytes]:
    try:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                return
            yield chunk
    finally:
        fh.close()


class WorkspaceFs:
    """Plain-filesystem CRUD confined to the workspace root.

    Every operation resolves its path argument first, so an ``InvalidPath``
    is raised before any storage access happens. No locking is done here:
    concurrent writers to the same file race at filesystem granularity.
    """

    def __init__(self, resolver: PathResolver) -> None:
        self._resolver = resolver

    def resolve(self, path: str | None) -> Path:
        return self._resolver.resolve(path)

    def ls(self, path: str | None) -> list[dict[str, Any]]:
        target = self.resolve(path)
        if not target.exists():
            raise FileNotFoundError("not_found")
        if not target.is_dir():
            raise NotADirectoryError("not_a_directory")
        out: list[dict[str, Any]] = []
        with os.scandir(target) as it:
            for entry in it:
                out.append(
                    {"name": entry.name, "isDir": entry.is_dir(follow_symlinks=False)}
                )
        return out

    def open_read(self, path: str | None) -> BinaryIO:
        target = self.resolve(path)
        if target.is_dir():
            raise IsADirectoryError("is_a_directory")
        # Opening eagerly surfaces FileNotFoundError before any bytes are sent.
        return open(target, "rb")

    def iter_bytes(
        self, path: str | None, *, chunk_size: int = _CHUNK_SIZE
    ) -> Iterator[bytes]:
        return _iter_chunks(self.open_read(path), chunk_size)

    def read_bytes(self, path: str | None) -> bytes:
        return b"".join(self.iter_bytes(path))

    def write(
        self, directory: str | None, file_name: str, content: bytes | BinaryIO
    ) -> Path:
        target_dir = self.resolve(directory)
        name = safe_file_name(file_name)
        dest = self.resolve(posixpath.join(normalize_public_path(directory), name))
        if not target_dir.exists():
            raise FileNotFoundError("not_found")
        if not target_dir.is_dir():
            raise NotADirectoryError("not_a_directory")
        if dest.is_dir():
            raise IsADirectoryError("is_a_directory")

        fd, tmp_name = tempfile.mkstemp(prefix=".upload-", dir=str(target_dir))
        try:
            with os.fdopen(fd, "wb") as out:
                if isinstance(content, (bytes, bytearray)):
                    out.write(content)
                else:
                    shutil.copyfileobj(content, out, _CHUNK_SIZE)
            # mkstemp creates 0600 files; uploads should look like normal files.
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, dest)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
        return dest

    def rm(self, path: str | None) -> None:
        target = self.resolve(path)
        if self._resolver.is_root(target):
            raise InvalidPath("refusing to delete workspace root")
        if target.is_symlink() or target.is_file():
            with contextlib.suppress(FileNotFoundError):
                target.unlink()
            return
        if target.is_dir():
            with contextlib.suppress(FileNotFoundError):
                shutil.rmtree(target)

    def mkdir(self, path: str | None) -> Path:
        target = self.resolve(path)
        target.mkdir(parents=True, exist_ok=True)
        return target
