"""Filesystem helpers for MoodleUpgrader."""

import logging
import os
import shutil
import sys
from typing import Iterable, Optional

from rich.console import Console


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except Exception as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def set_tree_permissions(
        self,
        root: str,
        dir_mode: int,
        file_mode: int,
        script_mode: int,
        skip: Optional[Iterable[str]] = None,
    ):
        """Applies modes below ``root``; top-level entries named in ``skip`` are left alone."""
        if sys.platform == "win32" or not os.path.exists(root):
            return

        skipped = set(skip or [])
        for current_root, dirs, files in os.walk(root):
            if current_root == root:
                dirs[:] = [directory for directory in dirs if directory not in skipped]
                files = [file_name for file_name in files if file_name not in skipped]
            for directory in dirs:
                self.set_permissions(os.path.join(current_root, directory), dir_mode)
            for file_name in files:
                mode = script_mode if file_name.endswith(".sh") else file_mode
                self.set_permissions(os.path.join(current_root, file_name), mode)

    def set_tree_owner(self, root: str, user: str, skip: Optional[Iterable[str]] = None) -> bool:
        """Recursively hands ``root`` to ``user`` (and the group of the same name)."""
        if sys.platform == "win32" or not os.path.exists(root):
            return False

        skipped = set(skip or [])
        try:
            shutil.chown(root, user=user, group=user)
            for current_root, dirs, files in os.walk(root):
                if current_root == root:
                    dirs[:] = [directory for directory in dirs if directory not in skipped]
                    files = [file_name for file_name in files if file_name not in skipped]
                for name in dirs + files:
                    path = os.path.join(current_root, name)
                    if not os.path.islink(path):
                        shutil.chown(path, user=user, group=user)
        except (OSError, LookupError) as exc:
            self.logger.warning("Could not change ownership of %s to %s: %s", root, user, exc)
            return False
        return True

    def cleanup_dir(self, path: str):
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except Exception as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)

    def remove_entry(self, path: str):
        if os.path.islink(path) or os.path.isfile(path):
            os.remove(path)
        elif os.path.isdir(path):
            shutil.rmtree(path)
