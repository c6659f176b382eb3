"""Read-only codebase tools offered to the model when a working directory is granted.

Every tool returns text for the model. Failures come back as strings starting
with ``error:`` so the model can correct itself; nothing here writes to disk.
"""

import fnmatch
import os
import re
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath

OUTPUT_CAP_BYTES = 50 * 1024
LINE_CAP_CHARS = 2000
SNIFF_BYTES = 8 * 1024
LIST_CAP = 100
GREP_CAP = 100
DEFAULT_READ_LIMIT = 2000
IGNORED_DIRS = {".git"}


def _schema(name: str, description: str, properties: dict, required: list[str]) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


_DIR_PARAM = {
    "type": "string",
    "description": 'Directory to search, relative to the codebase root. Defaults to ".".',
    "default": ".",
}

TOOLS = [
    _schema(
        "read_file",
        "Show a file under review with numbered lines, or list a directory "
        "(subdirectories end in /). Long files are paged: the output ends with "
        "the offset to ask for next.",
        {
            "file_path": {
                "type": "string",
                "description": "File or directory, relative to the codebase root.",
            },
            "offset": {
                "type": "integer",
                "description": "First line to show (1-based). Defaults to 1.",
                "default": 1,
            },
            "limit": {
                "type": "integer",
                "description": f"Lines to show at most. Defaults to {DEFAULT_READ_LIMIT}.",
                "default": DEFAULT_READ_LIMIT,
            },
        },
        ["file_path"],
    ),
    _schema(
        "list_files",
        "Find files in the codebase by glob, most recently modified first.",
        {
            "pattern": {
                "type": "string",
                "description": 'Glob relative to the search directory, e.g. "src/**/*.py".',
            },
            "path": _DIR_PARAM,
        },
        ["pattern"],
    ),
    _schema(
        "grep",
        "Search the codebase for a regular expression. Hits are grouped per "
        "file with line numbers, most recently modified files first.",
        {
            "pattern": {
                "type": "string",
                "description": "Regular expression (Python re syntax).",
            },
            "path": _DIR_PARAM,
            "include": {
                "type": "string",
                "description": 'Only search file names matching this glob, e.g. "*.ts".',
            },
        },
        ["pattern"],
    ),
]


# --- Sandbox ---


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve file_path against base_dir and refuse anything outside it.

    Symlinks are followed before the check, so a link pointing out of the
    codebase is rejected as well.

    Raises:
        ValueError: If the resolved path escapes base_dir.
    """
    base = Path(base_dir).resolve()
    candidate = Path(file_path)
    resolved = (candidate if candidate.is_absolute() else base / candidate).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(
            f"{file_path!r} points to {resolved}, outside the codebase root {base}"
        )
    return resolved


def _check_pattern(pattern: str) -> str | None:
    for flavour in (PurePosixPath, PureWindowsPath):
        parsed = flavour(pattern)
        if parsed.is_absolute():
            return f"error: pattern {pattern!r} must be relative, not absolute"
        if ".." in parsed.parts:
            return f"error: '..' is not allowed in pattern {pattern!r}"
    return None


def _search_root(path: str, base_dir: str) -> Path | str:
    """Resolve the directory a search starts from, or return an error string."""
    try:
        root = safe_resolve(path, base_dir)
    except ValueError as exc:
        return f"error: {exc}"
    if not root.exists():
        return f"error: path does not exist: {path}"
    if not root.is_dir():
        return f"error: path is not a directory: {path}"
    return root


def _iter_files(root: Path, base: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRS]
        for filename in filenames:
            candidate = Path(dirpath) / filename
            try:
                inside = candidate.resolve().is_relative_to(base)
            except (OSError, ValueError):
                inside = False
            if inside:
                yield candidate


def _display(filepath: Path, base: Path) -> str:
    return str(filepath.relative_to(base)) if filepath.is_relative_to(base) else str(filepath)


def _mtime(filepath: Path) -> float:
    try:
        return filepath.stat().st_mtime
    except OSError:
        return 0.0


def _cap(lines: list[str], used: int = 0) -> tuple[list[str], bool]:
    """Keep leading lines while the joined output stays under OUTPUT_CAP_BYTES.

    Returns the kept lines and whether any were cut.
    """
    kept = []
    for line in lines:
        used += len(line.encode("utf-8")) + 1
        if used > OUTPUT_CAP_BYTES:
            return kept, True
        kept.append(line)
    return kept, False


def _is_binary(filepath: Path) -> bool:
    with open(filepath, "rb") as f:
        return b"\x00" in f.read(SNIFF_BYTES)


# --- Tools ---


def _list_files(pattern: str, path: str, base_dir: str) -> str:
    err = _check_pattern(pattern)
    if err:
        return err
    root = _search_root(path, base_dir)
    if isinstance(root, str):
        return root

    base = Path(base_dir).resolve()
    found = [
        f for f in _iter_files(root, base)
        if PurePath(f.relative_to(root)).full_match(pattern)
    ]
    if not found:
        return "No files matched the pattern."

    found.sort(key=_mtime, reverse=True)
    shown, cut = _cap([_display(f, base) for f in found[:LIST_CAP]])
    out = "\n".join(shown)
    if cut or len(found) > LIST_CAP:
        out += (
            f"\n(Showing {len(shown)} of {len(found)} files. "
            "Narrow the pattern or path to see the rest.)"
        )
    return out


def _grep(pattern: str, path: str, base_dir: str, include: str | None = None) -> str:
    if include is not None:
        err = _check_pattern(include)
        if err:
            return err
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        return f"error: invalid regex {pattern!r}: {exc}"
    root = _search_root(path, base_dir)
    if isinstance(root, str):
        return root

    base = Path(base_dir).resolve()
    # (file, mtime, [(line number, text)])
    hits_by_file: list[tuple[Path, float, list[tuple[int, str]]]] = []
    for filepath in _iter_files(root, base):
        if include and not fnmatch.fnmatch(filepath.name, include):
            continue
        try:
            if _is_binary(filepath):
                continue
            text = filepath.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        hits = [
            (n, line)
            for n, line in enumerate(text.splitlines(), start=1)
            if regex.search(line)
        ]
        if hits:
            hits_by_file.append((filepath, _mtime(filepath), hits))

    total = sum(len(hits) for _, _, hits in hits_by_file)
    if not total:
        return "No matches found."

    hits_by_file.sort(key=lambda entry: (-entry[1], entry[0]))
    header = f"Found {total} matches"
    body = []
    budget = GREP_CAP
    for filepath, _, hits in hits_by_file:
        if budget <= 0:
            break
        body.append(f"\n{_display(filepath, base)}:")
        for n, line in hits[:budget]:
            body.append(f"  Line {n}: {line[:LINE_CAP_CHARS]}")
        budget -= len(hits)

    shown, cut = _cap(body, used=len(header) + 1)
    out = "\n".join([header, *shown])
    if cut or total > GREP_CAP:
        out += (
            "\n(Only the newest matches are shown. "
            "Narrow the pattern, path or include filter.)"
        )
    return out


def _read_file(
    file_path: str, base_dir: str, offset: int = 1, limit: int = DEFAULT_READ_LIMIT
) -> str:
    try:
        target = safe_resolve(file_path, base_dir)
    except ValueError as exc:
        return f"error: {exc}"
    if not target.exists():
        return f"error: path does not exist: {file_path}"

    if target.is_dir():
        try:
            entries = [
                child.name + ("/" if child.is_dir() else "")
                for child in sorted(target.iterdir())
            ]
        except OSError as exc:
            return f"error: {exc}"
        shown, cut = _cap(entries)
        return "\n".join(shown + (["[listing truncated]"] if cut else []))

    try:
        if _is_binary(target):
            return f"error: binary file detected: {file_path}"
        text = target.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return f"error: {file_path} is not valid UTF-8: {exc}"
    except OSError as exc:
        return f"error: {exc}"

    lines = text.splitlines()
    first = max(offset, 1)
    window = lines[first - 1 : first - 1 + max(limit, 1)]
    shown, _ = _cap(
        [f"{n}: {line[:LINE_CAP_CHARS]}" for n, line in enumerate(window, start=first)]
    )

    out = "\n".join(shown)
    next_line = first + len(shown)
    remaining = len(lines) - (next_line - 1)
    if remaining > 0:
        out += f"\n[{remaining} more lines, use offset={next_line} to continue]"
    return out


def dispatch(name: str, args: dict, base_dir: str) -> str:
    """Run the named tool inside base_dir and return its output.

    Raises:
        KeyError: For a tool name that does not exist.
    """
    if name == "read_file":
        return _read_file(
            args["file_path"],
            base_dir,
            offset=args.get("offset", 1),
            limit=args.get("limit", DEFAULT_READ_LIMIT),
        )
    if name == "list_files":
        return _list_files(args["pattern"], args.get("path", "."), base_dir)
    if name == "grep":
        return _grep(
            args["pattern"], args.get("path", "."), base_dir, include=args.get("include")
        )
    raise KeyError(f"Unknown tool: {name!r}")
