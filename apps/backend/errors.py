from __future__ import annotations


class ToolError(Exception):
    code = "tool_error"


class PathEscape(ToolError):
    code = "path_escape"


class NotFound(ToolError):
    code = "not_found"


class NotAFile(ToolError):
    code = "not_a_file"


class NotADirectory(ToolError):
    code = "not_a_directory"


class InvalidArguments(ToolError):
    code = "invalid_arguments"


class UnknownTool(ToolError):
    code = "unknown_tool"


class PatchRejected(ToolError):
    code = "patch_rejected"


class StreamError(Exception):
    code = "stream_error"


class InvalidRequest(StreamError):
    code = "invalid_request"


class BackendUnavailable(StreamError):
    code = "backend_unavailable"


class BackendStreamError(StreamError):
    code = "backend_stream_error"
