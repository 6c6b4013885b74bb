"""
debshell - A Debian-like shell over a virtual filesystem

This package provides a bash-flavoured command interpreter that runs
entirely in memory: a path-keyed virtual filesystem with Unix permissions,
an identity store backed by /etc/passwd, /etc/shadow and /etc/group, and
the usual file and account administration commands.
"""

__version__ = "0.1.0"

from .errors import (
    ShellError,
    ParseError,
    ValidationError,
    UsageError,
    FilesystemError,
    TransactionError,
    CommandNotFound,
)

from .filesystem import (
    FileSystem,
    Entry,
)

from .permissions import (
    PermissionChecker,
    Principal,
    parse_mode,
)

from .identity import (
    IdentityStore,
    UserChanges,
)

from .password import (
    PasswordPrompt,
    PasswordState,
)

from .shell import (
    Shell,
    CommandContext,
    CommandResult,
)

from .terminal import (
    TerminalSession,
    TerminalConfig,
    CommandExecutor,
    CommandHistory,
)

from .command_parser import (
    Command,
    CommandParser,
    Pipeline,
    RedirectType,
)

__all__ = [
    # Errors
    "ShellError",
    "ParseError",
    "ValidationError",
    "UsageError",
    "FilesystemError",
    "TransactionError",
    "CommandNotFound",

    # Filesystem and permissions
    "FileSystem",
    "Entry",
    "PermissionChecker",
    "Principal",
    "parse_mode",

    # Identity
    "IdentityStore",
    "UserChanges",
    "PasswordPrompt",
    "PasswordState",

    # Session
    "Shell",
    "CommandContext",
    "CommandResult",

    # Terminal
    "TerminalSession",
    "TerminalConfig",
    "CommandExecutor",
    "CommandHistory",

    # Command parser
    "Command",
    "CommandParser",
    "Pipeline",
    "RedirectType",

    # Version info
    "__version__",
]
