"""Operator decision policies for MoodleUpgrader."""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import click

from moodleupgrader.models import ReleaseVersion


class DecisionPolicy(ABC):
    """Answers the yes/no questions asked before irreversible steps."""

    @abstractmethod
    def confirm(self, key: str, question: str) -> bool:
        raise NotImplementedError

    def choose_version(self, candidates: List[ReleaseVersion], default: ReleaseVersion) -> str:
        return default.text


class InteractivePolicy(DecisionPolicy):
    """Prompts on the terminal."""

    def __init__(self, console):
        self.console = console

    def confirm(self, key: str, question: str) -> bool:
        return click.confirm(question, default=False)

    def choose_version(self, candidates: List[ReleaseVersion], default: ReleaseVersion) -> str:
        self.console.print(f"Recommended version: [bold]{default}[/bold]")
        return click.prompt(
            "Enter desired target version",
            default=default.text,
            show_default=True,
        ).strip()


class AssumeYesPolicy(DecisionPolicy):
    def confirm(self, key: str, question: str) -> bool:
        return True


class AssumeNoPolicy(DecisionPolicy):
    def confirm(self, key: str, question: str) -> bool:
        return False


class ScriptedPolicy(DecisionPolicy):
    """Answers from a mapping of decision keys; unknown keys go to ``fallback``."""

    def __init__(self, answers: Dict[str, bool], fallback: Optional[DecisionPolicy] = None):
        self.answers = dict(answers)
        self.fallback = fallback or AssumeNoPolicy()
        self.asked: List[str] = []

    def confirm(self, key: str, question: str) -> bool:
        self.asked.append(key)
        if key in self.answers:
            return self.answers[key]
        return self.fallback.confirm(key, question)

    def choose_version(self, candidates: List[ReleaseVersion], default: ReleaseVersion) -> str:
        return self.fallback.choose_version(candidates, default)
