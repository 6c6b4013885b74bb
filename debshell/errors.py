#!/usr/bin/env python3
"""
Exception taxonomy for debshell.

Every error a command can report derives from ShellError. The dispatcher
catches ShellError at the command boundary; anything else is a bug and is
allowed to propagate.

Families:
- ParseError: aborts the whole input line before anything runs
- ValidationError: aborts a single command (bad option, bad mode, bad name)
- FilesystemError: per-path failure, carries the path and a reason
- TransactionError: identity mutation failed and was rolled back
- CommandNotFound: unknown command name
"""

from typing import Optional


class ShellError(Exception):
    """Base class for all errors reported to the shell user."""
    exit_code = 1


# Parse errors

class ParseError(ShellError):
    """The input line could not be parsed."""
    exit_code = 2


class UnterminatedQuote(ParseError):
    """A quote was opened and never closed."""

    def __init__(self, char: str):
        self.char = char
        super().__init__(f"unexpected EOF while looking for matching `{char}'")


class RedirectionSyntaxError(ParseError):
    """Malformed redirection or pipeline, reported like bash does."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"syntax error near unexpected token `{token}'")


# Validation errors

class ValidationError(ShellError):
    """Invalid argument, option or value for a single command."""


class UsageError(ValidationError):
    """Command invoked with an invalid option or operand count."""
    exit_code = 2


# Filesystem errors

class FilesystemError(ShellError):
    """
    A filesystem operation failed on a single path.

    The reason is the strerror-style text ("No such file or directory"),
    so command handlers can render "cmd: cannot VERB 'path': reason".
    """
    reason = 'Input/output error'

    def __init__(self, path: str, reason: Optional[str] = None):
        self.path = path
        if reason is not None:
            self.reason = reason
        super().__init__(f"{path}: {self.reason}")


class NotFound(FilesystemError):
    reason = 'No such file or directory'


class NotADirectory(FilesystemError):
    reason = 'Not a directory'


class IsADirectory(FilesystemError):
    reason = 'Is a directory'


class FileExists(FilesystemError):
    reason = 'File exists'


class PermissionDenied(FilesystemError):
    reason = 'Permission denied'


class OperationNotPermitted(FilesystemError):
    reason = 'Operation not permitted'


class InvalidMove(FilesystemError):
    reason = 'Invalid argument'


# Identity errors

class TransactionError(ShellError):
    """An identity transaction failed; the snapshot has been restored."""

    def __init__(self, phase: str, cause: Exception):
        self.phase = phase
        self.cause = cause
        super().__init__(str(cause))


class CommandNotFound(ShellError):
    exit_code = 127

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name}: command not found")
