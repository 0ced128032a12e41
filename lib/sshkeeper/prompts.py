"""Yes/no confirmation for destructive operations."""

from typing import Protocol

import click


class ConfirmationPort(Protocol):
    """Anything that can answer a yes/no question."""

    def confirm(self, message: str) -> bool:
        ...


class ClickConfirmation:
    """Ask on the terminal. Defaults to 'no'."""

    def confirm(self, message: str) -> bool:
        return click.confirm(click.style(message, fg='yellow'), default=False)


class AutoConfirm:
    """Headless answer, used for --force and in tests."""

    def __init__(self, answer: bool = True):
        self.answer = answer
        self.asked = []

    def confirm(self, message: str) -> bool:
        self.asked.append(message)
        return self.answer
