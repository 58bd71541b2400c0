# tools.py
# Tool registry and the project file tools.
#
# Every tool is a ToolSpec: a camelCase wire name, a pydantic model for its
# arguments and a handler. The harness executes tools through a Toolbox and
# never calls handlers directly. All file tools are scoped to a root
# directory by resolve_inside().

import fnmatch
import inspect
import logging
import os
import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from deploy_pilot.models import ToolCall, ToolResult

LOGGER = logging.getLogger(__name__)

IGNORED_DIRS = frozenset({"node_modules", ".git", "dist", "build", "__pycache__", ".venv", "venv"})
MAX_GREP_MATCHES = 200
MAX_GLOB_FILES = 1000


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolError(Exception):
    """Raised by a tool handler for a failure the model should see."""


class PathTraversalError(ToolError):
    """Raised when a tool path resolves outside the directory it is scoped to."""


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolArgs(BaseModel):
    """Base for tool argument models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


@dataclass
class ToolSpec:
    name: str
    description: str
    args_model: type[ToolArgs]
    handler: Callable[[Any], Any]
    describe: Callable[[Any], str] | None = None

    def schema(self) -> dict:
        parameters = self.args_model.model_json_schema(by_alias=True)
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


class Toolbox:
    """Named tools available to one agent run."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        self._specs[spec.name] = spec

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def names(self) -> list[str]:
        return list(self._specs)

    def schemas(self) -> list[dict]:
        return [spec.schema() for spec in self._specs.values()]

    def merged(self, other: "Toolbox") -> "Toolbox":
        return Toolbox([*self._specs.values(), *other._specs.values()])

    def describe(self, call: ToolCall) -> str:
        """Human-readable one-liner for a tool call, used in progress events."""
        spec = self._specs.get(call.name)
        if spec is None or spec.describe is None:
            return f"Using {call.name}"
        try:
            return spec.describe(spec.args_model.model_validate(call.input))
        except ValidationError:
            return f"Using {call.name}"

    async def execute(self, call: ToolCall, index: int) -> ToolResult:
        """
        Run one tool call. Never raises for tool-level failures: unknown
        tools, invalid arguments, ToolError and OSError all come back as an
        error result the model can read and react to.
        """
        spec = self._specs.get(call.name)
        if spec is None:
            available = ", ".join(self._specs) or "none"
            return ToolResult(
                tool_call_index=index,
                error=f"Unknown tool '{call.name}'. Available tools: {available}.",
            )

        try:
            args = spec.args_model.model_validate(call.input)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}"
                for err in exc.errors()
            )
            return ToolResult(tool_call_index=index, error=f"Invalid arguments for {call.name}: {problems}")

        try:
            output = spec.handler(args)
            if inspect.isawaitable(output):
                output = await output
        except (ToolError, OSError) as exc:
            LOGGER.info("tool_failed", extra={"tool": call.name, "error": str(exc)})
            return ToolResult(tool_call_index=index, error=str(exc))

        return ToolResult(tool_call_index=index, output=output)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def resolve_inside(root: Path | str, path: str) -> Path:
    """Resolve `path` against `root`; raise PathTraversalError if it escapes."""
    base = Path(root).resolve()
    target = (base / path).resolve()
    if not target.is_relative_to(base):
        raise PathTraversalError(f"Path '{path}' is outside the allowed directory.")
    return target


def walk_files(root: Path, include_hidden: bool = True) -> Iterator[Path]:
    """Yield files under root in a stable order, skipping dependency and build dirs."""
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(
            name for name in dirs if name not in IGNORED_DIRS and (include_hidden or not name.startswith("."))
        )
        for name in sorted(files):
            if include_hidden or not name.startswith("."):
                yield Path(current) / name


def glob_match(relative: str, pattern: str) -> bool:
    if fnmatch.fnmatch(relative, pattern):
        return True
    if pattern.startswith("**/") and fnmatch.fnmatch(relative, pattern[3:]):
        return True
    if "/" not in pattern:
        return fnmatch.fnmatch(relative.rsplit("/", 1)[-1], pattern)
    return False


# ---------------------------------------------------------------------------
# Project file tools
# ---------------------------------------------------------------------------


class ReadFileArgs(ToolArgs):
    file_path: str = Field(..., description="Path of the file, relative to the project root.")


class GrepSearchArgs(ToolArgs):
    pattern: str = Field(..., description="Regular expression to search for.")
    glob: str | None = Field(default=None, description="Only search files matching this glob, e.g. '*.py'.")
    case_sensitive: bool = True


class GlobFindArgs(ToolArgs):
    pattern: str = Field(..., description="Glob pattern, e.g. '**/package.json'.")


class ListDirectoryArgs(ToolArgs):
    dir_path: str = Field(default=".", description="Directory relative to the project root.")


class WriteFileArgs(ToolArgs):
    file_path: str = Field(..., description="Path of the file to create, relative to the output directory.")
    content: str


def read_file(root: Path, args: ReadFileArgs) -> dict:
    target = resolve_inside(root, args.file_path)
    if not target.exists():
        raise ToolError(f"File not found: {args.file_path}")
    if target.is_dir():
        raise ToolError(f"Path is a directory, not a file: {args.file_path}")
    content = target.read_text(encoding="utf-8", errors="replace")
    return {
        "filePath": args.file_path,
        "content": content,
        "size": target.stat().st_size,
        "lines": len(content.splitlines()),
    }


def grep_search(root: Path, args: GrepSearchArgs) -> dict:
    flags = 0 if args.case_sensitive else re.IGNORECASE
    try:
        regex = re.compile(args.pattern, flags)
    except re.error as exc:
        raise ToolError(f"Invalid search pattern '{args.pattern}': {exc}") from exc

    base = Path(root).resolve()
    matches: list[dict] = []
    truncated = False
    for path in walk_files(base):
        relative = path.relative_to(base).as_posix()
        if args.glob and not glob_match(relative, args.glob):
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            # binary or unreadable
            continue
        for number, line in enumerate(text.splitlines(), start=1):
            if not regex.search(line):
                continue
            if len(matches) >= MAX_GREP_MATCHES:
                truncated = True
                break
            matches.append({"file": relative, "line": line.strip()[:500], "lineNumber": number})
        if truncated:
            break

    return {"pattern": args.pattern, "matches": matches, "count": len(matches), "truncated": truncated}


def glob_find(root: Path, args: GlobFindArgs) -> dict:
    base = Path(root).resolve()
    files: list[str] = []
    for path in walk_files(base, include_hidden=False):
        relative = path.relative_to(base).as_posix()
        if glob_match(relative, args.pattern):
            files.append(relative)
            if len(files) >= MAX_GLOB_FILES:
                break
    files.sort()
    return {"pattern": args.pattern, "files": files, "count": len(files)}


def list_directory(root: Path, args: ListDirectoryArgs) -> dict:
    target = resolve_inside(root, args.dir_path)
    if not target.exists():
        raise ToolError(f"Directory not found: {args.dir_path}")
    if not target.is_dir():
        raise ToolError(f"Not a directory: {args.dir_path}")
    files: list[str] = []
    directories: list[str] = []
    for entry in target.iterdir():
        (directories if entry.is_dir() else files).append(entry.name)
    return {
        "path": args.dir_path,
        "files": sorted(files),
        "directories": sorted(directories),
        "totalItems": len(files) + len(directories),
    }


def write_file(root: Path, args: WriteFileArgs, on_write: Callable[[str], None] | None = None) -> dict:
    target = resolve_inside(root, args.file_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(args.content, encoding="utf-8")
    if on_write is not None:
        on_write(args.file_path)
    return {"filePath": args.file_path, "size": len(args.content.encode("utf-8")), "success": True}


def _read_tools(root: Path) -> list[ToolSpec]:
    return [
        ToolSpec(
            name="readFile",
            description="Read the full contents of a file in the project.",
            args_model=ReadFileArgs,
            handler=partial(read_file, root),
            describe=lambda a: f"Reading {a.file_path}",
        ),
        ToolSpec(
            name="grepSearch",
            description="Search project files for lines matching a regular expression.",
            args_model=GrepSearchArgs,
            handler=partial(grep_search, root),
            describe=lambda a: f"Searching for '{a.pattern}'",
        ),
        ToolSpec(
            name="globFind",
            description="Find project files whose paths match a glob pattern.",
            args_model=GlobFindArgs,
            handler=partial(glob_find, root),
            describe=lambda a: f"Finding files matching {a.pattern}",
        ),
        ToolSpec(
            name="listDirectory",
            description="List the files and subdirectories of a project directory.",
            args_model=ListDirectoryArgs,
            handler=partial(list_directory, root),
            describe=lambda a: f"Listing {a.dir_path}",
        ),
    ]


def create_project_analysis_tools(project_root: Path | str) -> Toolbox:
    return Toolbox(_read_tools(Path(project_root)))


def create_config_generation_tools(
    project_root: Path | str,
    output_root: Path | str,
    on_write: Callable[[str], None] | None = None,
) -> Toolbox:
    """Read tools scoped to the project plus writeFile scoped to the output directory."""
    toolbox = Toolbox(_read_tools(Path(project_root)))
    toolbox.register(
        ToolSpec(
            name="writeFile",
            description="Create or overwrite a deployment configuration file in the output directory.",
            args_model=WriteFileArgs,
            handler=partial(write_file, Path(output_root), on_write=on_write),
            describe=lambda a: f"Writing {a.file_path}",
        )
    )
    return toolbox
