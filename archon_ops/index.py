#!/usr/bin/env python3
"""
HOMESERVER Archon Operations
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Command line entry point.

    archon-ops backup {full|incremental}
    archon-ops restore [artifact|latest] [--force] [--recover]
    archon-ops health {quick|comprehensive|monitor|report}
    archon-ops maintenance {full|quick|health|cleanup|update|security}

archon-backup, archon-restore, archon-health and archon-maintenance are
shortcuts for the matching subcommand.
"""

import argparse
import sys

from . import __version__, run_operation
from .modules.health.index import HEALTH_MODES, MODE_ALIASES
from .modules.maintenance.index import MAINTENANCE_MODES
from .utils.index import log_message, setup_logging

BACKUP_CHOICES = ("full", "incremental")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="archon-ops", description="Archon backup, restore and health operations")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="operation", required=True)

    backup = sub.add_parser("backup", help="create a backup")
    backup.add_argument("mode", nargs="?", default="full", choices=BACKUP_CHOICES)

    restore = sub.add_parser("restore", help="restore from a backup")
    restore.add_argument("artifact", nargs="?", default="latest", help="backup name, path or 'latest'")
    restore.add_argument("--force", action="store_true", help="skip interactive confirmation")
    restore.add_argument("--recover", action="store_true", help="roll back an interrupted restore")

    health = sub.add_parser("health", help="check service health")
    health.add_argument("mode", nargs="?", default="comprehensive",
                        choices=HEALTH_MODES + tuple(MODE_ALIASES))

    maintenance = sub.add_parser("maintenance", help="run maintenance tasks")
    maintenance.add_argument("mode", nargs="?", default="full", choices=tuple(MAINTENANCE_MODES))
    return parser


def operation_args(options: argparse.Namespace):
    """Translate parsed options back into the argument list a module's main() takes."""
    if options.operation == "restore":
        args = [options.artifact]
        if options.force:
            args.append("--force")
        if options.recover:
            args.append("--recover")
        return args
    return [options.mode]


def run(argv=None) -> int:
    options = build_parser().parse_args(argv)
    try:
        setup_logging(f"archon-{options.operation}")
        result = run_operation(options.operation, operation_args(options))
    except KeyboardInterrupt:
        log_message(f"{options.operation} interrupted by user", "WARNING")
        return 130

    if result.get("success"):
        return 0
    if result.get("error"):
        log_message(f"{options.operation} failed: {result['error']}", "ERROR")
    return 1


def main():
    sys.exit(run())


def _shortcut(operation: str):
    def _main():
        sys.exit(run([operation] + sys.argv[1:]))
    _main.__name__ = f"{operation}_main"
    return _main


backup_main = _shortcut("backup")
restore_main = _shortcut("restore")
health_main = _shortcut("health")
maintenance_main = _shortcut("maintenance")

if __name__ == "__main__":
    main()
