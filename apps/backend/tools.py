from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import InvalidArguments, ToolError, UnknownTool
from mutations import apply_patch, write_file
from workspace import DEFAULT_MAX_GREP_MATCHES, DEFAULT_MAX_READ_BYTES, Workspace

TOOL_NAMES = ("list", "read", "write", "applyPatch", "glob", "grep")
TOOL_ALIASES = {
    "list_dir": "list",
    "read_file": "read",
    "write_file": "write",
    "apply_patch": "applyPatch",
}


class ToolArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ListArgs(ToolArgs):
    path: str | None = None


class ReadArgs(ToolArgs):
    path: str = Field(min_length=1)
    max_bytes: int | None = Field(default=None, alias="maxBytes", ge=1)


class WriteArgs(ToolArgs):
    path: str = Field(min_length=1)
    content: str
    approve: bool = False


class ApplyPatchArgs(ToolArgs):
    path: str = Field(min_length=1)
    diff: str
    approve: bool = False


class GlobArgs(ToolArgs):
    pattern: str = Field(default="**/*", min_length=1)
    cwd: str | None = None


class GrepArgs(ToolArgs):
    pattern: str = Field(min_length=1)
    cwd: str | None = None
    max_matches: int | None = Field(default=None, alias="maxMatches", ge=1)


class ToolLimits(BaseModel):
    max_read_bytes: int = DEFAULT_MAX_READ_BYTES
    max_grep_matches: int = DEFAULT_MAX_GREP_MATCHES


def _run_list(workspace: Workspace, args: ListArgs, _: ToolLimits) -> Any:
    return workspace.list_dir(args.path)


def _run_read(workspace: Workspace, args: ReadArgs, limits: ToolLimits) -> Any:
    return workspace.read_file(args.path, args.max_bytes or limits.max_read_bytes)


def _run_write(workspace: Workspace, args: WriteArgs, _: ToolLimits) -> Any:
    return write_file(workspace, args.path, args.content, approve=args.approve)


def _run_apply_patch(workspace: Workspace, args: ApplyPatchArgs, _: ToolLimits) -> Any:
    return apply_patch(workspace, args.path, args.diff, approve=args.approve)


def _run_glob(workspace: Workspace, args: GlobArgs, _: ToolLimits) -> Any:
    return workspace.glob(args.pattern, args.cwd)


def _run_grep(workspace: Workspace, args: GrepArgs, limits: ToolLimits) -> Any:
    return workspace.grep(
        args.pattern, args.cwd, args.max_matches or limits.max_grep_matches
    )


TOOLS: dict[str, tuple[type[ToolArgs], Callable[[Workspace, Any, ToolLimits], Any]]] = {
    "list": (ListArgs, _run_list),
    "read": (ReadArgs, _run_read),
    "write": (WriteArgs, _run_write),
    "applyPatch": (ApplyPatchArgs, _run_apply_patch),
    "glob": (GlobArgs, _run_glob),
    "grep": (GrepArgs, _run_grep),
}


def canonical_tool_name(name: Any) -> str:
    if not isinstance(name, str) or not name:
        raise UnknownTool("Tool name required")
    canonical = TOOL_ALIASES.get(name, name)
    if canonical not in TOOLS:
        raise UnknownTool(f"Unknown tool: {name}")
    return canonical


def validate_args(name: str, args: Any) -> ToolArgs:
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise InvalidArguments(f"{name}: args must be an object")
    model, _ = TOOLS[name]
    try:
        return model.model_validate(args)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'args'}: {error['msg']}"
            for error in exc.errors()
        )
        raise InvalidArguments(f"{name}: {problems}") from exc


def to_jsonable(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, list):
        return [to_jsonable(item) for item in result]
    return result


def invoke(
    workspace: Workspace,
    name: Any,
    args: Any = None,
    limits: ToolLimits | None = None,
) -> dict[str, Any]:
    limits = limits or ToolLimits()
    try:
        canonical = canonical_tool_name(name)
        parsed = validate_args(canonical, args)
        _, runner = TOOLS[canonical]
        result = runner(workspace, parsed, limits)
    except ToolError as exc:
        return {"ok": False, "error": str(exc), "code": exc.code}
    except Exception as exc:
        return {"ok": False, "error": str(exc) or exc.__class__.__name__, "code": "internal"}
    return {"ok": True, "result": to_jsonable(result)}
