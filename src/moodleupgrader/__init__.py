"""
MoodleUpgrader - In-place Moodle upgrade tool
"""

__version__ = "1.0.0"

from .core import MoodleUpgrader, UpgraderError

__all__ = ["MoodleUpgrader", "UpgraderError"]
