"""Filesystem helpers for deploypipe."""

import logging
import os
import shutil
import sys
import tempfile
from typing import Optional

from rich.console import Console

WORKSPACE_DIR_MODE = 0o777


class FileSystemService:
    """Encapsulates run workspace side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def create_workspace(self, run_id: str, root: Optional[str] = None) -> str:
        if root:
            os.makedirs(root, exist_ok=True)
        path = tempfile.mkdtemp(prefix=f"deploypipe-{run_id}-", dir=root)
        # Tool containers may run as a different user than the host.
        self.set_permissions(path, WORKSPACE_DIR_MODE)
        self.logger.debug("Created workspace: %s", path)
        return path

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def cleanup_dir(self, path: str):
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)
