import pytest

from errors import PathEscape
from workspace import resolve_path


@pytest.mark.parametrize(
    "relative",
    [
        "..",
        "../outside.txt",
        "a/../../outside.txt",
        "a/b/../../../outside.txt",
        "./../../etc/passwd",
    ],
)
def test_paths_leaving_root_are_rejected(tmp_path, relative) -> None:
    root = tmp_path / "ws"
    root.mkdir()
    with pytest.raises(PathEscape):
        resolve_path(root, relative)


@pytest.mark.parametrize(
    "relative,expected",
    [
        (None, "."),
        ("", "."),
        (".", "."),
        ("src/app.py", "src/app.py"),
        ("a/../b.txt", "b.txt"),
        ("deep/not/created/yet.txt", "deep/not/created/yet.txt"),
    ],
)
def test_paths_inside_root_resolve_under_root(tmp_path, relative, expected) -> None:
    root = tmp_path / "ws"
    root.mkdir()
    resolved = resolve_path(root, relative)
    assert resolved == (root / expected).resolve()
    assert resolved == root.resolve() or root.resolve() in resolved.parents


def test_sibling_directory_sharing_prefix_is_rejected(tmp_path) -> None:
    root = tmp_path / "ws"
    sibling = tmp_path / "ws-other"
    root.mkdir()
    sibling.mkdir()
    (sibling / "secret.txt").write_text("nope", encoding="utf-8")

    with pytest.raises(PathEscape):
        resolve_path(root, "../ws-other/secret.txt")


def test_absolute_paths_are_checked_against_root(tmp_path) -> None:
    root = tmp_path / "ws"
    root.mkdir()

    assert resolve_path(root, str(root / "inside.txt")) == (root / "inside.txt").resolve()
    with pytest.raises(PathEscape):
        resolve_path(root, str(tmp_path / "outside.txt"))


def test_nul_byte_is_rejected(tmp_path) -> None:
    with pytest.raises(PathEscape):
        resolve_path(tmp_path, "file\x00.txt")
