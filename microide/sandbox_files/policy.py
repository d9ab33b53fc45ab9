from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass
from pathlib import Path


class InvalidPath(ValueError):
    """Raised when a caller-supplied path cannot be confined to the workspace."""


def _climbs_above_root(raw: str) -> bool:
    depth = 0
    for seg in raw.split("/"):
        if seg in ("", "."):
            continue
        if seg == "..":
            depth -= 1
            if depth < 0:
                return True
        else:
            depth += 1
    return False


def normalize_public_path(path: str | None) -> str:
    """Normalize an untrusted workspace path to a root-relative POSIX path.

    The input is rooted at a synthetic "/" before normalization, so any excess
    ".." segments are absorbed at the root instead of climbing out of it:
    "../../etc/passwd" becomes "etc/passwd". The empty string, "." and "/"
    all normalize to "" (the workspace root itself).
    """
    raw = path or ""
    if "\x00" in raw:
        raise InvalidPath("invalid path")

    # normpath keeps a leading "//", so strip every leading slash afterwards.
    norm = posixpath.normpath("/" + raw)
    return norm.lstrip("/")


def _is_within(root: str, candidate: str) -> bool:
    if candidate == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return candidate.startswith(prefix)


@dataclass(frozen=True)
class PathResolver:
    """Map untrusted relative paths onto absolute paths under ``root``.

    ``root`` must already be absolute and canonical. Resolution is a pure
    string operation unless ``follow_symlinks`` is set, in which case the
    result is also canonicalized and re-checked against the root.
    """

    root: str
    on_escape: str = "clamp"
    follow_symlinks: bool = False

    def resolve(self, rel_path: str | None) -> Path:
        raw = rel_path or ""
        rel = normalize_public_path(raw)
        if self.on_escape == "reject" and _climbs_above_root(raw):
            raise InvalidPath("path escapes workspace")

        full = os.path.join(self.root, rel) if rel else self.root
        if not _is_within(self.root, full):
            raise InvalidPath("path escapes workspace")

        if self.follow_symlinks:
            real = os.path.realpath(full)
            if not _is_within(self.root, real):
                raise InvalidPath("path escapes workspace")
        return Path(full)

    def is_root(self, path: Path) -> bool:
        return str(path) == self.root
