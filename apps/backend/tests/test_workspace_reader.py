import time

import pytest

from errors import InvalidArguments, NotADirectory, NotAFile, NotFound, PathEscape
from workspace import Workspace


def make_workspace(tmp_path) -> Workspace:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hello')\n# TODO: tidy\n", encoding="utf-8")
    (tmp_path / "src" / "util.py").write_text("def helper():\n    return 1\n", encoding="utf-8")
    (tmp_path / "README.md").write_text("# Demo\nTodo list below\n", encoding="utf-8")
    (tmp_path / "node_modules" / "lib").mkdir(parents=True)
    (tmp_path / "node_modules" / "lib" / "index.js").write_text("// TODO vendored\n", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    return Workspace(tmp_path)


def test_list_dir_reports_kinds_and_sizes(tmp_path) -> None:
    workspace = make_workspace(tmp_path)

    entries = {entry.name: entry for entry in workspace.list_dir()}

    assert set(entries) == {"src", "README.md"}
    assert entries["src"].kind == "directory"
    assert entries["src"].size is None
    assert entries["README.md"].kind == "file"
    assert entries["README.md"].size == len("# Demo\nTodo list below\n")


def test_list_dir_errors(tmp_path) -> None:
    workspace = make_workspace(tmp_path)

    with pytest.raises(NotFound):
        workspace.list_dir("missing")
    with pytest.raises(NotADirectory):
        workspace.list_dir("README.md")
    with pytest.raises(PathEscape):
        workspace.list_dir("..")


def test_ignore_set_is_configurable(tmp_path) -> None:
    make_workspace(tmp_path)
    workspace = Workspace(tmp_path, ignore_dirs=["src"])

    names = {entry.name for entry in workspace.list_dir()}

    assert "src" not in names
    assert "node_modules" in names


def test_read_file_truncation_boundary(tmp_path) -> None:
    workspace = Workspace(tmp_path)
    (tmp_path / "exact.txt").write_bytes(b"a" * 64)
    (tmp_path / "over.txt").write_bytes(b"a" * 65)

    exact = workspace.read_file("exact.txt", max_bytes=64)
    over = workspace.read_file("over.txt", max_bytes=64)

    assert exact.truncated is False
    assert exact.total_bytes == 64
    assert len(exact.content.encode("utf-8")) == 64
    assert over.truncated is True
    assert over.total_bytes == 65
    assert len(over.content.encode("utf-8")) == 64


def test_truncated_read_replaces_bad_bytes_and_drops_only_the_cut_character(tmp_path) -> None:
    workspace = Workspace(tmp_path)
    (tmp_path / "mixed.txt").write_bytes(b"a\xffb" + "é".encode("utf-8"))

    truncated = workspace.read_file("mixed.txt", max_bytes=4)
    full = workspace.read_file("mixed.txt")

    assert truncated.truncated is True
    assert truncated.total_bytes == 5
    assert truncated.content == "a\ufffdb"
    assert full.content == "a\ufffdbé"


def test_read_file_preserves_line_endings(tmp_path) -> None:
    workspace = Workspace(tmp_path)
    (tmp_path / "crlf.txt").write_bytes(b"one\r\ntwo\r\n")

    snapshot = workspace.read_file("crlf.txt")

    assert snapshot.content == "one\r\ntwo\r\n"


def test_read_file_errors(tmp_path) -> None:
    workspace = make_workspace(tmp_path)

    with pytest.raises(NotFound):
        workspace.read_file("nope.txt")
    with pytest.raises(NotAFile):
        workspace.read_file("src")
    with pytest.raises(PathEscape):
        workspace.read_file("../../etc/passwd")
    with pytest.raises(InvalidArguments):
        workspace.read_file("README.md", max_bytes=0)


def test_glob_matches_files_and_skips_ignored(tmp_path) -> None:
    workspace = make_workspace(tmp_path)

    assert sorted(workspace.glob("**/*.py")) == ["src/app.py", "src/util.py"]
    assert sorted(workspace.glob("*.py", "src")) == ["app.py", "util.py"]
    everything = workspace.glob("**/*")
    assert "src" not in everything
    assert not any(path.startswith("node_modules") for path in everything)
    assert not any(path.startswith(".git") for path in everything)


def test_glob_rejects_patterns_leaving_root(tmp_path) -> None:
    workspace = make_workspace(tmp_path)

    with pytest.raises(PathEscape):
        workspace.glob("../*")
    with pytest.raises(PathEscape):
        workspace.glob("/etc/*")
    with pytest.raises(PathEscape):
        workspace.glob("*", "..")


def test_grep_is_case_insensitive_and_skips_ignored(tmp_path) -> None:
    workspace = make_workspace(tmp_path)

    matches = workspace.grep("todo")

    assert [(m.file, m.line) for m in matches] == [("README.md", 2), ("src/app.py", 2)]
    assert matches[1].text == "# TODO: tidy"


def test_grep_reports_paths_relative_to_root_with_cwd(tmp_path) -> None:
    workspace = make_workspace(tmp_path)

    matches = workspace.grep("helper", "src")

    assert [(m.file, m.line, m.text) for m in matches] == [
        ("src/util.py", 1, "def helper():")
    ]


def test_grep_stops_at_max_matches_mid_file(tmp_path) -> None:
    workspace = Workspace(tmp_path)
    (tmp_path / "a.txt").write_text("hit\n" * 5, encoding="utf-8")
    (tmp_path / "b.txt").write_text("hit\n" * 5, encoding="utf-8")

    matches = workspace.grep("hit", max_matches=3)

    assert len(matches) == 3
    assert {m.file for m in matches} == {"a.txt"}
    assert [m.line for m in matches] == [1, 2, 3]


def test_grep_order_is_stable(tmp_path) -> None:
    workspace = Workspace(tmp_path)
    for i in range(20):
        (tmp_path / f"f{i}.txt").write_text(f"needle {i}\n", encoding="utf-8")

    first = workspace.grep("needle", max_matches=7)
    second = workspace.grep("needle", max_matches=7)

    assert len(first) == 7
    assert first == second


def test_grep_skips_binary_and_undecodable_files(tmp_path) -> None:
    workspace = Workspace(tmp_path)
    (tmp_path / "blob.bin").write_bytes(b"needle\x00\x01\x02")
    (tmp_path / "latin1.txt").write_bytes("needle caf\xe9".encode("latin-1"))
    (tmp_path / "ok.txt").write_text("needle\n", encoding="utf-8")

    matches = workspace.grep("needle")

    assert [m.file for m in matches] == ["ok.txt"]


def test_grep_rejects_invalid_arguments(tmp_path) -> None:
    workspace = Workspace(tmp_path)

    with pytest.raises(InvalidArguments):
        workspace.grep("(unclosed")
    with pytest.raises(InvalidArguments):
        workspace.grep("x", max_matches=0)
    with pytest.raises(NotFound):
        workspace.grep("x", "missing")


@pytest.mark.slow
def test_grep_5000_files_performance(tmp_path) -> None:
    workspace = Workspace(tmp_path)
    for i in range(5000):
        content = f"file {i} - regular content"
        if i % 100 == 0:
            content += " TODO marker"
        (tmp_path / f"doc_{i}.txt").write_text(content, encoding="utf-8")

    started = time.perf_counter()
    matches = workspace.grep("todo marker", max_matches=10)
    elapsed = time.perf_counter() - started

    assert len(matches) == 10
    assert elapsed < 20.0, f"grep took too long: {elapsed:.2f}s"
