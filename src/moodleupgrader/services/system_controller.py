"""Operating system package and service management for MoodleUpgrader."""

import os
import shutil
from abc import ABC, abstractmethod
from typing import List

from moodleupgrader.errors import UpgraderError


class SystemController(ABC):
    """Capability interface for package installs and service control."""

    @abstractmethod
    def install_packages(self, packages: List[str]):
        raise NotImplementedError

    @abstractmethod
    def restart_service(self, service: str):
        raise NotImplementedError

    @abstractmethod
    def reload_service(self, service: str):
        raise NotImplementedError

    @abstractmethod
    def is_service_active(self, service: str) -> bool:
        raise NotImplementedError


class SystemdController(SystemController):
    """Uses apt-get and systemctl through the command runner."""

    def __init__(self, command_runner, logger):
        self.command_runner = command_runner
        self.logger = logger

    def install_packages(self, packages: List[str]):
        if not shutil.which("apt-get"):
            raise UpgraderError(
                "Automatic package installation is only supported on Ubuntu/Debian (apt-get)."
            )

        env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")
        self.logger.info("Installing packages: %s", " ".join(packages))
        self.command_runner.run(["apt-get", "update"], check=True, env=env)
        self.command_runner.run(["apt-get", "install", "-y"] + list(packages), check=True, env=env)

    def restart_service(self, service: str):
        self.logger.info("Restarting service %s", service)
        self.command_runner.run(["systemctl", "restart", service], check=True, capture_output=True)

    def reload_service(self, service: str):
        self.logger.info("Reloading service %s", service)
        self.command_runner.run(["systemctl", "reload", service], check=True, capture_output=True)

    def is_service_active(self, service: str) -> bool:
        try:
            result = self.command_runner.run(
                ["systemctl", "is-active", "--quiet", service],
                check=False,
                capture_output=True,
            )
        except UpgraderError:
            return False
        return result.returncode == 0
