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
along with this program. If not, see <https://www.gnu.org/licenses/>.
"""

import importlib
import traceback
from typing import Any, Callable, Dict, List, Optional

from .utils.index import log_message

__version__ = "1.0.0"

OPERATIONS = ("backup", "restore", "health", "maintenance")

__all__ = [
    'log_message',
    'run_operation',
    'OPERATIONS',
]


def run_operation(name: str, args: Optional[List[str]] = None,
                  callback: Optional[Callable[[str, Any], None]] = None) -> Dict[str, Any]:
    """
    Run a single operation module.

    Args:
        name (str): Operation name ("backup", "restore", ...) or import path
        args (list, optional): Arguments passed to the module's main function
        callback (callable, optional): Called with (name, result) when done

    Returns:
        dict: Result from the operation's main(args), always with a "success" key
    """
    result: Dict[str, Any] = {"success": False}
    module_path = name if "." in name else f"modules.{name}.index"
    try:
        mod = importlib.import_module(f".{module_path}", package=__name__)
        if hasattr(mod, 'main'):
            log_message(f"Running operation: {name}", "DEBUG")
            result = mod.main(args) or {"success": False, "error": "no result"}
            log_message(f"Completed operation: {name}", "DEBUG")
        else:
            log_message(f"Module {module_path} has no main(args) function.", "ERROR")
            result = {"success": False, "error": f"{module_path} has no main()"}
    except Exception as e:
        log_message(f"Error running {name}: {e}", "ERROR")
        traceback.print_exc()
        result = {"success": False, "error": str(e)}

    if callback and callable(callback):
        callback(name, result)

    return result
