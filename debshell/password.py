#!/usr/bin/env python3
"""
Interactive password change as a resumable state machine.

`passwd` cannot finish in one call: it needs further input lines. The
command returns a PasswordPrompt, and the terminal feeds it one line at a
time until it reaches DONE or CANCELLED. The shadow file is written only
on the final, successful step.
"""

import logging
from enum import Enum
from typing import List

logger = logging.getLogger(__name__)


class PasswordState(Enum):
    AWAITING_CURRENT = 'current'
    AWAITING_NEW_PASSWORD = 'new'
    AWAITING_CONFIRMATION = 'confirm'
    DONE = 'done'
    CANCELLED = 'cancelled'


PROMPTS = {
    PasswordState.AWAITING_CURRENT: 'Current password: ',
    PasswordState.AWAITING_NEW_PASSWORD: 'New password: ',
    PasswordState.AWAITING_CONFIRMATION: 'Retype new password: ',
}


class PasswordPrompt:
    """
    Pending password change for one account.

    Args:
        store: IdentityStore that receives the final password
        username: account being changed
        require_current: ask for (and verify) the current password first
    """

    MAX_ATTEMPTS = 3
    MIN_LENGTH = 3

    def __init__(self, store, username: str, require_current: bool = False):
        self.store = store
        self.username = username
        self.state = (PasswordState.AWAITING_CURRENT if require_current
                      else PasswordState.AWAITING_NEW_PASSWORD)
        self.attempts = 0
        self.succeeded = False
        self._candidate = None

    @property
    def prompt(self) -> str:
        return PROMPTS.get(self.state, '')

    @property
    def finished(self) -> bool:
        return self.state in (PasswordState.DONE, PasswordState.CANCELLED)

    def _transition(self, state: PasswordState) -> None:
        logger.debug("passwd %s: %s -> %s", self.username, self.state.value, state.value)
        self.state = state

    def _fail(self) -> List[str]:
        """Count a failed attempt; give up after MAX_ATTEMPTS."""
        self.attempts += 1
        self._candidate = None
        if self.attempts >= self.MAX_ATTEMPTS:
            self._transition(PasswordState.DONE)
            return ['passwd: Have exhausted maximum number of retries for service',
                    'passwd: password unchanged']
        self._transition(PasswordState.AWAITING_NEW_PASSWORD)
        return []

    def feed(self, line: str) -> List[str]:
        """Consume one input line; returns the messages to display."""
        if self.finished:
            return []

        if self.state == PasswordState.AWAITING_CURRENT:
            if not self.store.verify_password(self.username, line):
                self._transition(PasswordState.DONE)
                return ['passwd: Authentication token manipulation error',
                        'passwd: password unchanged']
            self._transition(PasswordState.AWAITING_NEW_PASSWORD)
            return []

        if self.state == PasswordState.AWAITING_NEW_PASSWORD:
            if len(line) < self.MIN_LENGTH:
                messages = ['BAD PASSWORD: The password is shorter than '
                            f'{self.MIN_LENGTH} characters']
                return messages + self._fail()
            self._candidate = line
            self._transition(PasswordState.AWAITING_CONFIRMATION)
            return []

        # AWAITING_CONFIRMATION
        if line != self._candidate:
            return ['Sorry, passwords do not match.'] + self._fail()

        self.store.set_password(self.username, self._candidate)
        self._candidate = None
        self.succeeded = True
        self._transition(PasswordState.DONE)
        return ['passwd: password updated successfully']

    def cancel(self) -> List[str]:
        """Abandon the change without touching the identity files."""
        if self.finished:
            return []
        self._candidate = None
        self._transition(PasswordState.CANCELLED)
        return ['passwd: password unchanged']
