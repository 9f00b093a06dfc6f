"""PHP interpreter probes for MoodleUpgrader."""

import subprocess
from typing import List, Optional

from moodleupgrader.errors import UpgraderError


class PhpRuntime:
    """Queries and invokes the PHP CLI interpreter."""

    def __init__(self, command_runner, logger, php_binary: str = "php"):
        self.command_runner = command_runner
        self.logger = logger
        self.php_binary = php_binary

    def _evaluate(self, expression: str) -> Optional[str]:
        try:
            result = self.command_runner.run(
                [self.php_binary, "-r", expression],
                check=False,
                capture_output=True,
            )
        except UpgraderError as exc:
            self.logger.warning("PHP is not available: %s", exc)
            return None

        if result.returncode != 0:
            return None
        output = (result.stdout or "").strip()
        return output or None

    def version(self) -> Optional[str]:
        return self._evaluate("echo PHP_VERSION;")

    def minor_version(self) -> Optional[str]:
        return self._evaluate("echo PHP_MAJOR_VERSION.'.'.PHP_MINOR_VERSION;")

    def ini_get(self, name: str) -> Optional[str]:
        return self._evaluate(f"echo ini_get('{name}');")

    def run_script(
        self,
        install_root: str,
        script: str,
        args: Optional[List[str]] = None,
        interactive: bool = False,
    ) -> subprocess.CompletedProcess:
        """Runs a Moodle CLI script from the install root without raising on failure."""
        return self.command_runner.run(
            [self.php_binary, script] + list(args or []),
            check=False,
            capture_output=not interactive,
            cwd=install_root,
        )
