from __future__ import annotations

import codecs
import glob as globlib
import os
import re
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, Literal

from pydantic import BaseModel

from errors import InvalidArguments, NotADirectory, NotAFile, NotFound, PathEscape

DEFAULT_IGNORE_DIRS = (
    ".git",
    "node_modules",
    "dist",
    "build",
    ".next",
    "out",
    ".venv",
    "__pycache__",
    ".localpilot-data",
)
DEFAULT_MAX_READ_BYTES = 200_000
DEFAULT_MAX_GREP_MATCHES = 200
BINARY_SNIFF_BYTES = 2048

_LINE_BREAK_RE = re.compile(r"\r?\n")


class DirEntry(BaseModel):
    name: str
    kind: Literal["file", "directory"]
    size: int | None = None


class FileSnapshot(BaseModel):
    content: str
    truncated: bool
    total_bytes: int


class GrepMatch(BaseModel):
    file: str
    line: int
    text: str


def within_path(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def resolve_path(root: Path | str, relative_path: str | None = None) -> Path:
    # ".." is collapsed before the containment check; the target need not exist
    root_path = Path(root).resolve()
    rel = relative_path or "."
    if "\x00" in rel:
        raise PathEscape(f"NUL byte in path: {relative_path!r}")
    resolved = (root_path / rel).resolve()
    if not within_path(resolved, root_path):
        raise PathEscape(f"Path escapes workspace root: {relative_path}")
    return resolved


def split_lines(text: str) -> list[str]:
    if not text:
        return []
    lines = _LINE_BREAK_RE.split(text)
    if lines[-1] == "":
        lines.pop()
    return lines


def read_text_or_none(path: Path) -> str | None:
    try:
        data = path.read_bytes()
    except OSError:
        return None
    if b"\x00" in data[:BINARY_SNIFF_BYTES]:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


class Workspace:
    def __init__(self, root: Path | str, ignore_dirs: Iterable[str] = DEFAULT_IGNORE_DIRS) -> None:
        self.root = Path(root).resolve()
        self.ignore_dirs = frozenset(ignore_dirs)

    def resolve(self, relative_path: str | None = None) -> Path:
        return resolve_path(self.root, relative_path)

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def is_ignored(self, parts: Iterable[str]) -> bool:
        return any(part in self.ignore_dirs for part in parts)

    def _require_dir(self, directory: Path, label: str | None) -> None:
        if not directory.exists():
            raise NotFound(f"Directory not found: {label or '.'}")
        if not directory.is_dir():
            raise NotADirectory(f"Not a directory: {label or '.'}")

    def _contained(self, candidate: Path) -> Path | None:
        # Enumerated entries (not caller input) that resolve outside the root
        # through a symlink are skipped.
        resolved = candidate.resolve()
        return resolved if within_path(resolved, self.root) else None

    def list_dir(self, relative_dir: str | None = None) -> list[DirEntry]:
        directory = self.resolve(relative_dir)
        self._require_dir(directory, relative_dir)
        entries: list[DirEntry] = []
        with os.scandir(directory) as iterator:
            for entry in iterator:
                if entry.name in self.ignore_dirs:
                    continue
                if entry.is_dir():
                    entries.append(DirEntry(name=entry.name, kind="directory"))
                    continue
                try:
                    size: int | None = entry.stat().st_size
                except OSError:
                    size = None
                entries.append(DirEntry(name=entry.name, kind="file", size=size))
        return entries

    def read_file(
        self, relative_path: str, max_bytes: int = DEFAULT_MAX_READ_BYTES
    ) -> FileSnapshot:
        if max_bytes < 1:
            raise InvalidArguments("maxBytes must be a positive integer")
        path = self.resolve(relative_path)
        if not path.exists():
            raise NotFound(f"File not found: {relative_path}")
        if not path.is_file():
            raise NotAFile(f"Not a file: {relative_path}")
        data = path.read_bytes()
        total = len(data)
        if total > max_bytes:
            # a character cut at the boundary is dropped, other bad bytes become U+FFFD
            return FileSnapshot(
                content=codecs.getincrementaldecoder("utf-8")("replace").decode(
                    data[:max_bytes], final=False
                ),
                truncated=True,
                total_bytes=total,
            )
        return FileSnapshot(
            content=data.decode("utf-8", errors="replace"),
            truncated=False,
            total_bytes=total,
        )

    def glob(self, pattern: str = "**/*", relative_dir: str | None = None) -> list[str]:
        if not pattern:
            raise InvalidArguments("glob requires a pattern")
        pure = PurePosixPath(pattern.replace("\\", "/"))
        if pure.is_absolute() or ".." in pure.parts:
            raise PathEscape(f"Glob pattern escapes workspace root: {pattern}")
        directory = self.resolve(relative_dir)
        self._require_dir(directory, relative_dir)

        matches: list[str] = []
        for match in globlib.iglob(pattern, root_dir=directory, recursive=True):
            rel = PurePosixPath(Path(match).as_posix())
            if self.is_ignored(rel.parts):
                continue
            resolved = self._contained(directory / match)
            if resolved is None or not resolved.is_file():
                continue
            matches.append(rel.as_posix())
        return matches

    def iter_files(self, directory: Path) -> Iterator[Path]:
        for current, dirnames, filenames in os.walk(directory):
            dirnames[:] = sorted(
                name
                for name in dirnames
                if name not in self.ignore_dirs and not name.startswith(".")
            )
            for name in sorted(filenames):
                if name.startswith(".") or name in self.ignore_dirs:
                    continue
                yield Path(current) / name

    def grep(
        self,
        pattern: str,
        relative_dir: str | None = None,
        max_matches: int = DEFAULT_MAX_GREP_MATCHES,
    ) -> list[GrepMatch]:
        if not pattern:
            raise InvalidArguments("grep requires a pattern")
        if max_matches < 1:
            raise InvalidArguments("maxMatches must be a positive integer")
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error as exc:
            raise InvalidArguments(f"Invalid regular expression: {exc}") from exc
        directory = self.resolve(relative_dir)
        self._require_dir(directory, relative_dir)

        matches: list[GrepMatch] = []
        for file_path in self.iter_files(directory):
            resolved = self._contained(file_path)
            if resolved is None:
                continue
            text = read_text_or_none(resolved)
            if text is None:
                continue
            for number, line in enumerate(split_lines(text), start=1):
                if not regex.search(line):
                    continue
                matches.append(
                    GrepMatch(file=self.relative(file_path), line=number, text=line)
                )
                if len(matches) >= max_matches:
                    return matches
        return matches
