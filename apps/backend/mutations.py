from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel

from errors import InvalidArguments, NotAFile, PatchRejected
from workspace import Workspace

PATCH_DOES_NOT_APPLY = "patch does not apply"
NO_NEWLINE_MARKER = "\\ No newline at end of file"
DRY_RUN_MESSAGE = "Dry-run only. Set approve=true to apply."

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_LINE_RE = re.compile(r"[^\n]*\n|[^\n]+")


class Preview(BaseModel):
    status: Literal["preview"] = "preview"
    dry_run: bool = True
    diff: str | None = None
    content: str | None = None
    message: str = DRY_RUN_MESSAGE


class Applied(BaseModel):
    status: Literal["applied"] = "applied"
    dry_run: bool = False
    bytes_written: int


class Failed(BaseModel):
    status: Literal["failed"] = "failed"
    dry_run: bool
    reason: str


MutationResult = Preview | Applied | Failed


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    # (tag, text) with tag in " ", "-", "+"; text keeps its "\n" unless the
    # patch marks the line as the last one without a newline
    lines: list[tuple[str, str]] = field(default_factory=list)

    @property
    def old_lines(self) -> list[str]:
        return [text for tag, text in self.lines if tag != "+"]


def split_keepends(text: str) -> list[str]:
    return _LINE_RE.findall(text)


def unified_diff(before: str, after: str, label: str) -> str:
    out: list[str] = []
    for line in difflib.unified_diff(
        split_keepends(before),
        split_keepends(after),
        fromfile=label,
        tofile=label,
        fromfiledate="before",
        tofiledate="after",
    ):
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n" + NO_NEWLINE_MARKER + "\n")
    return "".join(out)


def parse_hunks(patch_text: str) -> list[Hunk]:
    # hunk bodies are read by header counts, so removed lines starting with
    # "--" are not taken for file headers
    lines = patch_text.split("\n")
    hunks: list[Hunk] = []
    headers = 0
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ "):
            headers += 1
            if headers > 1:
                raise InvalidArguments("Patch touches more than one file")
            i += 2
            continue
        if not line.startswith("@@"):
            i += 1
            continue
        match = _HUNK_RE.match(line)
        if not match:
            raise InvalidArguments(f"Malformed hunk header: {line!r}")
        hunk = Hunk(
            old_start=int(match.group(1)),
            old_count=int(match.group(2) or "1"),
            new_start=int(match.group(3)),
            new_count=int(match.group(4) or "1"),
        )
        old_left, new_left = hunk.old_count, hunk.new_count
        i += 1
        while old_left > 0 or new_left > 0:
            if i >= len(lines):
                raise InvalidArguments("Malformed diff: hunk ends early")
            body = lines[i]
            # some tools strip the single space of an empty context line
            tag, text = (body[0], body[1:]) if body else (" ", "")
            if tag == " ":
                old_left -= 1
                new_left -= 1
            elif tag == "-":
                old_left -= 1
            elif tag == "+":
                new_left -= 1
            elif tag == "\\":
                i += 1
                continue
            else:
                raise InvalidArguments(f"Malformed diff line prefix: {tag!r}")
            if old_left < 0 or new_left < 0:
                raise InvalidArguments("Malformed diff: hunk longer than its header")
            hunk.lines.append((tag, text + "\n"))
            i += 1
            if i < len(lines) and lines[i].startswith("\\"):
                last_tag, last_text = hunk.lines[-1]
                hunk.lines[-1] = (last_tag, last_text[:-1])
                i += 1
        hunks.append(hunk)
    return hunks


def _matches_at(base: list[str], expected: list[str], pos: int) -> bool:
    for offset, line in enumerate(expected):
        if base[pos + offset].rstrip("\n") != line.rstrip("\n"):
            return False
    return True


def hunk_start(hunk: Hunk) -> int:
    return hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1


def locate_hunk(base: list[str], hunk: Hunk, floor: int, offset: int = 0) -> int | None:
    # search outward from the declared line shifted by the previous hunk's
    # offset; at equal distance the later position wins, as in patch(1)
    expected = hunk.old_lines
    last = len(base) - len(expected)
    if last < floor:
        return None
    declared = min(max(hunk_start(hunk) + offset, floor), last)
    for distance in range(0, max(declared - floor, last - declared) + 1):
        candidates = (declared + distance, declared - distance) if distance else (declared,)
        for pos in candidates:
            if floor <= pos <= last and _matches_at(base, expected, pos):
                return pos
    return None


def _append_line(out: list[str], line: str) -> None:
    # a base line that ended the file without "\n" is no longer the last one
    if out and not out[-1].endswith("\n"):
        out[-1] += "\n"
    out.append(line)


def apply_unified_patch(base_text: str, patch_text: str) -> str:
    base = split_keepends(base_text)
    out: list[str] = []
    cursor = 0
    offset = 0
    for hunk in parse_hunks(patch_text):
        pos = locate_hunk(base, hunk, cursor, offset)
        if pos is None:
            raise PatchRejected(PATCH_DOES_NOT_APPLY)
        offset = pos - hunk_start(hunk)
        for line in base[cursor:pos]:
            _append_line(out, line)
        cursor = pos
        for tag, text in hunk.lines:
            if tag == " ":
                _append_line(out, base[cursor])
                cursor += 1
            elif tag == "-":
                cursor += 1
            else:
                _append_line(out, text)
    for line in base[cursor:]:
        _append_line(out, line)
    return "".join(out)


def read_current(path: Path, relative_path: str) -> str:
    if not path.exists():
        return ""
    if not path.is_file():
        raise NotAFile(f"Not a file: {relative_path}")
    return path.read_bytes().decode("utf-8", errors="replace")


def write_atomic(path: Path, content: str) -> int:
    # no lock: concurrent writers race and the last replace wins
    data = content.encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    try:
        temp.write_bytes(data)
        temp.replace(path)
    finally:
        if temp.exists():
            temp.unlink()
    return len(data)


def write_file(
    workspace: Workspace, relative_path: str, content: str, approve: bool = False
) -> MutationResult:
    path = workspace.resolve(relative_path)
    before = read_current(path, relative_path)
    if not approve:
        return Preview(diff=unified_diff(before, content, relative_path))
    return Applied(bytes_written=write_atomic(path, content))


def apply_patch(
    workspace: Workspace, relative_path: str, patch_text: str, approve: bool = False
) -> MutationResult:
    path = workspace.resolve(relative_path)
    before = read_current(path, relative_path)
    try:
        after = apply_unified_patch(before, patch_text)
    except PatchRejected as exc:
        return Failed(dry_run=not approve, reason=str(exc))
    if not approve:
        return Preview(content=after)
    return Applied(bytes_written=write_atomic(path, after))
