from __future__ import annotations

import itertools
import os

import pytest

from microide.sandbox_files.policy import (
    InvalidPath,
    PathResolver,
    _is_within,
    normalize_public_path,
)

ROOT = "/srv/workspace"


def _resolver(**kwargs) -> PathResolver:
    return PathResolver(root=ROOT, **kwargs)


@pytest.mark.parametrize("raw", ["", ".", "/", "//", "./", "/./.", None])
def test_root_aliases_resolve_to_root(raw) -> None:
    assert str(_resolver().resolve(raw)) == ROOT


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("src/App.tsx", "src/App.tsx"),
        ("/src/App.tsx", "src/App.tsx"),
        ("a//b///c", "a/b/c"),
        ("a/./b/../c", "a/c"),
        ("../../etc/passwd", "etc/passwd"),
        ("a/../../b", "b"),
        ("//etc/passwd", "etc/passwd"),
        ("..", ""),
        ("../../..", ""),
        ("../../../", ""),
    ],
)
def test_normalize_public_path(raw: str, expected: str) -> None:
    assert normalize_public_path(raw) == expected


def test_traversal_clamps_under_root() -> None:
    p = _resolver().resolve("../../etc/passwd")
    assert str(p) == f"{ROOT}/etc/passwd"
    assert str(p) != "/etc/passwd"


def test_absolute_input_is_workspace_rooted() -> None:
    assert str(_resolver().resolve("/etc/shadow")) == f"{ROOT}/etc/shadow"


@pytest.mark.parametrize("raw", ["\x00", "a\x00b", "../\x00/etc"])
def test_nul_bytes_are_rejected(raw: str) -> None:
    with pytest.raises(InvalidPath):
        _resolver().resolve(raw)


@pytest.mark.parametrize(
    "raw",
    [
        "..\\..\\etc\\passwd",
        "..∕..∕etc",
        "．．/．．/etc",
        "...",
        ".../...",
    ],
)
def test_lookalike_segments_stay_literal_names(raw: str) -> None:
    p = str(_resolver().resolve(raw))
    assert p.startswith(ROOT + "/")


def test_no_segment_combination_escapes_root() -> None:
    parts = ["..", ".", "", "a", "/", "../.."]
    resolver = _resolver()
    for n in range(1, 5):
        for combo in itertools.product(parts, repeat=n):
            p = str(resolver.resolve("/".join(combo)))
            assert p == ROOT or p.startswith(ROOT + "/"), combo


def test_sibling_directory_is_not_within_root() -> None:
    assert not _is_within("/srv/workspace", "/srv/workspace2/x")
    assert not _is_within("/srv/workspace", "/srv/workspace2")
    assert _is_within("/srv/workspace", "/srv/workspace/x")
    assert _is_within("/srv/workspace", "/srv/workspace")
    assert _is_within("/", "/etc")


def test_reject_mode_refuses_escapes() -> None:
    resolver = _resolver(on_escape="reject")
    with pytest.raises(InvalidPath):
        resolver.resolve("../x")
    with pytest.raises(InvalidPath):
        resolver.resolve("a/../../b")
    with pytest.raises(InvalidPath):
        resolver.resolve("..")


def test_reject_mode_allows_contained_dotdot() -> None:
    resolver = _resolver(on_escape="reject")
    assert str(resolver.resolve("a/../b")) == f"{ROOT}/b"
    assert str(resolver.resolve("a/b/../../c")) == f"{ROOT}/c"
    assert str(resolver.resolve("")) == ROOT


def test_resolve_does_not_touch_filesystem(monkeypatch) -> None:
    def _boom(*_args, **_kwargs):
        raise AssertionError("filesystem access")

    monkeypatch.setattr(os.path, "realpath", _boom)
    monkeypatch.setattr(os, "stat", _boom)
    assert str(_resolver().resolve("a/b")) == f"{ROOT}/a/b"


def test_follow_symlinks_rejects_links_leaving_root(tmp_path) -> None:
    root = tmp_path / "ws"
    outside = tmp_path / "outside"
    root.mkdir()
    outside.mkdir()
    (outside / "secret.txt").write_text("x")
    (root / "inner").mkdir()
    os.symlink(outside, root / "escape")
    os.symlink(root / "inner", root / "alias")

    real_root = os.path.realpath(root)
    lexical = PathResolver(root=real_root)
    strict = PathResolver(root=real_root, follow_symlinks=True)

    # The lexical check alone cannot see where a link points.
    assert str(lexical.resolve("escape/secret.txt")).startswith(real_root)
    with pytest.raises(InvalidPath):
        strict.resolve("escape/secret.txt")
    assert str(strict.resolve("alias")) == os.path.join(real_root, "alias")
