"""Confirmation providers gating destructive fleet actions."""

from typing import List, Protocol

import click


class ConfirmationProvider(Protocol):
    """Decides whether an update over the given hosts may proceed."""

    def confirm(self, hosts: List[str], message: str) -> bool:
        ...


class InteractiveConfirmation:
    """Ask the operator on the terminal."""

    def confirm(self, hosts: List[str], message: str) -> bool:
        return click.confirm(message, default=False)


class StaticConfirmation:
    """Canned answer for --yes, CI and tests."""

    def __init__(self, answer: bool = True):
        self.answer = answer
        self.asked: List[List[str]] = []

    def confirm(self, hosts: List[str], message: str) -> bool:
        self.asked.append(list(hosts))
        return self.answer
