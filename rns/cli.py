"""Command-line front-end: ``rns plugin add|remove|status|list``.

Examples::

    rns plugin add auth.firebase --option provider=google
    rns plugin add nav.expo-router --dry-run
    rns plugin remove auth.firebase --yes
    rns plugin status --project ./my-app

The process exit code follows ``rns.errors.ExitCode``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from rns import __version__
from rns.config import load_config
from rns.errors import ExitCode, InvalidInputError, RnsError, exit_code_for, format_error
from rns.modulator import Modulator, Operation, Workspace
from rns.utils import console, print_error, print_info, print_summary_table, print_warning


class _ArgumentParser(argparse.ArgumentParser):
    """Report usage errors with the invalid-input exit code."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(int(ExitCode.INVALID_INPUT), f"{self.prog}: error: {message}\n")


def parse_option(raw: str) -> tuple[str, Any]:
    """Parse one ``--option key=value``; JSON literals keep their type."""
    key, sep, value = raw.partition("=")
    key = key.strip()
    if not sep or not key:
        raise InvalidInputError(f"Invalid --option '{raw}': expected key=value")
    try:
        return key, json.loads(value)
    except ValueError:
        return key, value


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="rns",
        description="Install and remove capabilities in an rns React Native project",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  rns plugin add auth.firebase --option provider=google\n"
            "  rns plugin remove auth.firebase --yes\n"
            "  rns plugin status\n"
        ),
    )
    parser.add_argument("--version", action="version", version=f"rns {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--project", "-p",
        default=".",
        help="Project root (default: current directory)",
    )
    common.add_argument(
        "--templates",
        default=None,
        help="Templates directory holding plugins/ (default: RNS_TEMPLATES_DIR or ./templates)",
    )
    common.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show exit-code names and subprocess stderr on failure",
    )

    change = argparse.ArgumentParser(add_help=False)
    change.add_argument("capability", help="Capability id, e.g. auth.firebase")
    change.add_argument("--dry-run", action="store_true", help="Print the plan without applying it")
    change.add_argument("--force", action="store_true", help="Proceed past the conflict gate")
    change.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    commands = parser.add_subparsers(dest="command", required=True, parser_class=_ArgumentParser)
    plugin = commands.add_parser("plugin", help="Manage capabilities")
    actions = plugin.add_subparsers(dest="action", required=True, parser_class=_ArgumentParser)

    add = actions.add_parser("add", parents=[common, change], help="Install a capability")
    add.add_argument(
        "--option", "-o",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Pack option (repeatable)",
    )
    add.set_defaults(handler=_cmd_add)

    remove = actions.add_parser("remove", parents=[common, change], help="Remove a capability")
    remove.set_defaults(handler=_cmd_remove)

    status = actions.add_parser("status", parents=[common], help="Show installed capabilities")
    status.set_defaults(handler=_cmd_status)

    listing = actions.add_parser("list", parents=[common], help="List available capabilities")
    listing.set_defaults(handler=_cmd_list)
    return parser


def _workspace(args: argparse.Namespace) -> Workspace:
    overrides = {}
    if args.templates:
        overrides["templates_dir"] = str(Path(args.templates).resolve())
    try:
        config = load_config(Path(args.project).resolve(), overrides=overrides)
    except ValueError as exc:
        raise InvalidInputError(f"Invalid project configuration: {exc}") from exc
    return Workspace.build(config)


def _confirm_force(args: argparse.Namespace) -> bool:
    if args.yes or args.dry_run:
        return True
    if not sys.stdin.isatty():
        print_error("--force requires --yes when not running interactively")
        return False
    return Confirm.ask(
        f"Force past safety checks for '{args.capability}'? Existing capabilities are not displaced",
        default=False,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _change(args: argparse.Namespace, operation: Operation, options: dict[str, Any]) -> int:
    workspace = _workspace(args)
    if args.force and not _confirm_force(args):
        print_info("Aborted.")
        return int(ExitCode.GENERIC_FAILURE)
    modulator = Modulator(workspace)
    _plan, result = asyncio.run(
        modulator.run(
            args.capability,
            operation,
            options=options,
            force=args.force,
            dry_run=args.dry_run,
        )
    )
    if args.verbose:
        for error in result.errors:
            print_error(error)
    if result.dry_run:
        print_info("Dry run: nothing was changed.")
    return result.exit_code if not result.success else int(ExitCode.OK)


def _cmd_add(args: argparse.Namespace) -> int:
    options = dict(parse_option(raw) for raw in args.option)
    return _change(args, Operation.INSTALL, options)


def _cmd_remove(args: argparse.Namespace) -> int:
    return _change(args, Operation.REMOVE, {})


def _cmd_status(args: argparse.Namespace) -> int:
    workspace = _workspace(args)
    manifest = workspace.manifest.read()
    project = manifest.project
    print_summary_table(
        {
            "project": str(workspace.config.project_root),
            "target": project.target,
            "language": project.language,
            "platforms": ", ".join(project.platforms),
            "package manager": project.package_manager or "auto",
            "cli version": manifest.cli.version,
            "installed": len(manifest.plugins),
        },
        title="Project",
    )
    if not manifest.plugins:
        print_info("No capabilities installed.")
        return int(ExitCode.OK)

    table = Table(title="Installed capabilities", show_header=True, header_style="bold cyan")
    table.add_column("Capability", no_wrap=True)
    table.add_column("Version")
    table.add_column("Installed")
    table.add_column("Owned", justify="right")
    table.add_column("Modified", justify="right")
    for capability_id, record in manifest.plugins.items():
        table.add_row(
            escape(capability_id),
            escape(record.version),
            record.installed_at,
            str(len(record.owned_paths)),
            str(len(record.modified_files)),
        )
    console.print(table)

    for capability_id in manifest.installed_ids():
        if capability_id not in workspace.registry:
            print_warning(f"'{capability_id}' is installed but no longer in the registry")
    if manifest.permissions and manifest.permissions.permission_ids:
        print_summary_table(
            {
                "mandatory": ", ".join(manifest.permissions.mandatory) or "-",
                "optional": ", ".join(manifest.permissions.optional) or "-",
            },
            title="Permissions",
        )
    return int(ExitCode.OK)


def _cmd_list(args: argparse.Namespace) -> int:
    workspace = _workspace(args)
    installed: set[str] = set()
    if workspace.manifest.exists():
        installed = set(workspace.manifest.read().installed_ids())
    if not len(workspace.registry):
        print_info(f"No capabilities found in {workspace.config.plugins_path}")
        return int(ExitCode.OK)

    table = Table(title="Available capabilities", show_header=True, header_style="bold cyan")
    table.add_column("Capability", no_wrap=True)
    table.add_column("Category")
    table.add_column("Version")
    table.add_column("Targets")
    table.add_column("Slots")
    table.add_column("Installed", justify="center")
    for descriptor in workspace.registry.all():
        table.add_row(
            escape(descriptor.id),
            descriptor.category.value,
            escape(descriptor.version),
            ", ".join(t.value for t in descriptor.support.targets),
            escape(", ".join(descriptor.single_slots())) or "-",
            "[green]yes[/green]" if descriptor.id in installed else "",
        )
    console.print(table)
    return int(ExitCode.OK)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the ``rns`` console script."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.handler(args)
    except RnsError as exc:
        print_error(format_error(exc, verbose=args.verbose))
        return exit_code_for(exc)
    except KeyboardInterrupt as exc:
        print_error("Interrupted.")
        return exit_code_for(exc)


if __name__ == "__main__":
    sys.exit(main())
