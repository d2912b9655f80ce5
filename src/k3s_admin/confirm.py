"""Operator decision points."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from rich.console import Console
from rich.prompt import Confirm

from k3s_admin.models import OperationOptions

logger = logging.getLogger(__name__)


class Confirmer(ABC):
    """Answers yes/no questions raised during an operation."""

    @abstractmethod
    def confirm(self, question: str) -> bool:
        pass


class StaticConfirmer(Confirmer):
    """Always gives the same answer; used for unattended runs and tests."""

    def __init__(self, answer: bool = False) -> None:
        self.answer = answer
        self.questions: list = []

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        logger.info(f"{question} -> {'yes' if self.answer else 'no'}")
        return self.answer


class RichConfirmer(Confirmer):
    """Asks the operator on the terminal."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def confirm(self, question: str) -> bool:
        return Confirm.ask(question, console=self.console, default=False)


def escalation_allowed(options: OperationOptions, confirmer: Confirmer, question: str) -> bool:
    """Decide whether to take a riskier fallback action.

    Forced runs escalate without asking; interactive runs ask the operator;
    unattended runs never escalate.
    """
    if options.force:
        logger.warning(f"⚠️ {question} Proceeding (force)")
        return True
    if options.interactive:
        return confirmer.confirm(question)
    return False
