"""Shared utility functions for the rns CLI.

Provides async command execution, JSON and atomic file I/O, content hashing,
project-relative path helpers, glob-zone matching, and the Rich-based console
reporting used by every phase of the install engine.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import json
import os
import re
import tempfile
from pathlib import Path, PurePosixPath
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table

console = Console()

# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


async def run_command(
    cmd: str | list[str],
    cwd: str | Path | None = None,
    timeout: int = 300,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    """Run a command asynchronously and capture its output.

    Args:
        cmd: Shell command string or list of arguments.
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process is killed.
        env: Optional extra environment variables merged on top of ``os.environ``.

    Returns:
        A ``(returncode, stdout, stderr)`` tuple.  A timeout is reported as
        returncode ``-1`` with an explanatory stderr rather than raised.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    if isinstance(cmd, list):
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
        )
    else:
        process = await asyncio.create_subprocess_shell(
            cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
        )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(), timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return (
            -1,
            "",
            f"Command timed out after {timeout}s: {cmd if isinstance(cmd, str) else ' '.join(cmd)}",
        )

    stdout_str = (stdout_bytes or b"").decode("utf-8", errors="replace").strip()
    stderr_str = (stderr_bytes or b"").decode("utf-8", errors="replace").strip()
    return (process.returncode or 0, stdout_str, stderr_str)


# ---------------------------------------------------------------------------
# String / name helpers
# ---------------------------------------------------------------------------


def sanitize_name(name: str) -> str:
    """Convert an arbitrary label to a safe directory name.

    Examples::

        sanitize_name("auth.firebase") -> "auth-firebase"
        sanitize_name("  Remove (nav)  ") -> "remove-nav"
    """
    result = re.sub(r"[^a-zA-Z0-9_-]", "-", name.strip().lower())
    result = re.sub(r"-+", "-", result)
    return result.strip("-")


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def load_json(path: str | Path) -> dict[str, Any]:
    """Load and parse a JSON file whose top level is an object.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the top-level value is not an object.
    """
    file_path = Path(path)
    data = json.loads(file_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{file_path}: expected a JSON object at the top level")
    return data


def dump_json(data: Any, indent: int = 2) -> str:
    """Serialise *data* the way every rns-managed JSON file is written."""
    return json.dumps(data, indent=indent, ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


def ensure_dir(path: str | Path) -> Path:
    """Create a directory (and parents) if it does not exist."""
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path


def atomic_write_bytes(path: str | Path, content: bytes) -> Path:
    """Write *content* to *path* so readers never observe a partial file.

    The data goes to a temporary file in the same directory which then
    replaces the destination with ``os.replace``.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return target


def atomic_write_text(path: str | Path, content: str) -> Path:
    return atomic_write_bytes(path, content.encode("utf-8"))


def sha256_file(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def normalize_rel_path(path: str | Path) -> str:
    """Return *path* as a normalised, forward-slash, project-relative string.

    Raises:
        ValueError: If the path is absolute or escapes the project root.
    """
    raw = str(path).replace("\\", "/")
    if raw.startswith("/") or re.match(r"^[A-Za-z]:", raw):
        raise ValueError(f"Expected a project-relative path, got '{path}'")
    parts: list[str] = []
    for part in PurePosixPath(raw).parts:
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                raise ValueError(f"Path '{path}' escapes the project root")
            parts.pop()
            continue
        parts.append(part)
    if not parts:
        raise ValueError(f"Empty path '{path}'")
    return "/".join(parts)


def matches_any(rel_path: str, patterns: list[str] | tuple[str, ...]) -> bool:
    """Return ``True`` if *rel_path* falls under any of the glob *patterns*.

    A trailing ``/**`` matches the directory itself and everything below it;
    other patterns use ``fnmatch`` semantics against the whole path.
    """
    for pattern in patterns:
        if pattern.endswith("/**"):
            prefix = pattern[:-3]
            if rel_path == prefix or rel_path.startswith(prefix + "/"):
                return True
        elif fnmatch.fnmatchcase(rel_path, pattern):
            return True
    return False


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(0.42)  -> "0.4s"
        format_duration(65.2)  -> "1m 5s"
    """
    if seconds < 0:
        return "0.0s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes > 0:
        return f"{minutes}m {int(secs)}s"
    return f"{secs:.1f}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


PHASE_COLORS: dict[str, str] = {
    "dependency-plan": "bright_cyan",
    "conflict-check": "bright_magenta",
    "attachment": "bright_green",
    "dependency-install": "bright_yellow",
    "runtime-wiring": "bright_blue",
    "patch-ops": "bright_yellow",
    "verify": "bright_cyan",
    "manifest-update": "bright_green",
}


def print_phase_header(index: int, total: int, name: str) -> None:
    """Print a full-width rule naming the phase and its position in the run."""
    color = PHASE_COLORS.get(name, "white")
    console.print(
        Rule(f"[bold {color}] {index}/{total} {name} [/bold {color}]", style=color)
    )


def print_summary_table(data: dict[str, Any], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{escape(message)}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{escape(message)}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{escape(message)}[/bold yellow]")


def print_info(message: str) -> None:
    console.print(f"[dim]{escape(message)}[/dim]")
