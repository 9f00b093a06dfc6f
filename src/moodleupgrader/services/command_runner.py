"""Subprocess execution service for MoodleUpgrader."""

import subprocess
from typing import Dict, List, Optional

from moodleupgrader.errors import UpgraderError


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        stdout_path: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """Run ``cmd``; ``stdout_path`` redirects standard output into a file."""
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout

        try:
            if stdout_path:
                with open(stdout_path, "w", encoding="utf-8") as stdout_file:
                    result = subprocess.run(
                        cmd,
                        text=True,
                        stdout=stdout_file,
                        stderr=subprocess.PIPE,
                        timeout=effective_timeout,
                        cwd=cwd,
                        env=env,
                    )
            else:
                result = subprocess.run(
                    cmd,
                    text=True,
                    capture_output=capture_output,
                    timeout=effective_timeout,
                    cwd=cwd,
                    env=env,
                )
        except FileNotFoundError as exc:
            raise UpgraderError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise UpgraderError(f"Command timed out after {effective_timeout}s: {cmd_str}") from exc
        except OSError as exc:
            raise UpgraderError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if (capture_output or stdout_path) else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"

        if check:
            raise UpgraderError(message)

        self.logger.debug(message)
        return result
