#!/usr/bin/env python3
"""
Session state for debshell.

A Shell owns the virtual filesystem and identity store for the lifetime of
a session, together with everything bash keeps per shell: the working
directory, the previous directory for `cd -`, local and exported
variables, and the stack of identities pushed by `su`.

Command handlers never print. They receive a CommandContext carrying the
session and the write/error functions to use, so the caller decides
whether output goes to the terminal, a pipe, or a redirected file.

Core Design Principles:
- Variable lookup order: local, then exported, then environment
- The environment is synthesized from the session, never stored
- Output sinks are injected, not global
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from .errors import NotFound, NotADirectory, PermissionDenied, ValidationError
from .filesystem import FileSystem
from .identity import IdentityStore, PasswdEntry
from .permissions import PermissionChecker, Principal

logger = logging.getLogger(__name__)

DEFAULT_PATH = '/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin'


@dataclass
class CommandResult:
    """
    Outcome of executing one command or line.

    A pending password change is returned in prompt; exit_session asks the
    terminal to stop.
    """
    exit_code: int = 0
    prompt: Optional[object] = None
    exit_session: bool = False


@dataclass
class CommandContext:
    """Everything a command handler may use: session, sinks, stdin."""
    shell: 'Shell'
    name: str
    write: Callable[[str], None]
    error_sink: Callable[[str], None]
    stdin: Optional[str] = None
    unmatched: Set[str] = field(default_factory=set)
    run_line: Optional[Callable[[str], int]] = None

    @property
    def fs(self) -> FileSystem:
        return self.shell.fs

    @property
    def identity(self) -> IdentityStore:
        return self.shell.identity

    @property
    def checker(self) -> PermissionChecker:
        return self.shell.checker()

    @property
    def principal(self) -> Principal:
        return self.shell.principal()

    def writeln(self, text: str = '') -> None:
        self.write(text + '\n')

    def error(self, message: str) -> None:
        """Write one diagnostic line, prefixed with the command name."""
        self.error_sink(f"{self.name}: {message}\n")

    def resolve(self, path: str) -> str:
        return self.shell.resolve_path(path)


class Shell:
    """
    Stateful session over a virtual Debian system.

    Args:
        fs: filesystem to operate on (a fresh base system by default)
        user: initial user, must exist in /etc/passwd
        hostname: value of $HOSTNAME and the prompt host
        initial_dir: starting directory (the user's home by default)
    """

    def __init__(self, fs: Optional[FileSystem] = None, user: str = 'root',
                 hostname: str = 'debian', initial_dir: Optional[str] = None):
        self.fs = fs or FileSystem()
        self.identity = IdentityStore(self.fs)
        self.identity.initialize()
        self.hostname = hostname

        if self.identity.lookup_user(user) is None:
            raise ValidationError(f"user '{user}' does not exist")
        self.user = user
        self.user_stack: List[Tuple[str, str]] = []

        self.local_vars: Dict[str, str] = {}
        self.session_vars: Dict[str, str] = {}
        self.last_exit_code = 0

        home = self.home
        start = initial_dir or home
        self.cwd = start if self.fs.is_dir(start) else '/'
        self.previous_dir: Optional[str] = None

    # Identity

    @property
    def account(self) -> Optional[PasswdEntry]:
        return self.identity.lookup_user(self.user)

    @property
    def home(self) -> str:
        account = self.account
        return account.home if account else '/'

    def principal(self) -> Principal:
        return self.identity.principal(self.user)

    def checker(self) -> PermissionChecker:
        return PermissionChecker(self.fs, self.principal())

    @property
    def is_root(self) -> bool:
        account = self.account
        return account is not None and account.uid == 0

    def primary_group(self) -> str:
        account = self.account
        return self.identity.primary_group_name(account) if account else 'root'

    def switch_user(self, username: str, login: bool = False) -> None:
        """su: push the current identity and become username."""
        target = self.identity.lookup_user(username)
        if target is None:
            raise ValidationError(f"user {username} does not exist")
        self.user_stack.append((self.user, self.cwd))
        previous = self.user
        self.user = username
        if (login or username != previous) and self.fs.is_dir(target.home):
            self.cwd = target.home
        logger.debug("su %s -> %s (depth %d)", previous, username, len(self.user_stack))

    def exit_user(self) -> bool:
        """Pop one su level. Returns False when there is nothing to pop."""
        if not self.user_stack:
            return False
        self.user, self.cwd = self.user_stack.pop()
        logger.debug("exit to %s", self.user)
        return True

    # Variables

    def environment(self) -> Dict[str, str]:
        """The read-only environment synthesized from session state."""
        account = self.account
        return {
            'HOME': self.home,
            'PWD': self.cwd,
            'OLDPWD': self.previous_dir or '',
            'USER': self.user,
            'LOGNAME': self.user,
            'SHELL': account.shell if account else '/bin/bash',
            'HOSTNAME': self.hostname,
            'UID': str(account.uid) if account else '0',
            'GID': str(account.gid) if account else '0',
            'PATH': DEFAULT_PATH,
        }

    def lookup_variable(self, name: str) -> str:
        if name in self.local_vars:
            return self.local_vars[name]
        if name in self.session_vars:
            return self.session_vars[name]
        if name == '?':
            return str(self.last_exit_code)
        return self.environment().get(name, '')

    def set_local(self, name: str, value: str) -> None:
        self.local_vars[name] = value

    def export(self, name: str, value: Optional[str] = None) -> None:
        """Promote name into the exported scope, creating it empty if unset."""
        if value is None:
            value = self.local_vars.get(name, self.session_vars.get(name, ''))
        self.local_vars.pop(name, None)
        self.session_vars[name] = value

    def variables(self) -> Dict[str, str]:
        """All visible variables with the lookup priority applied."""
        merged = dict(self.environment())
        merged.update(self.session_vars)
        merged.update(self.local_vars)
        return merged

    # Paths

    def resolve_path(self, path: str) -> str:
        return self.fs.resolve_path(path, self.cwd, self.home, self.previous_dir)

    def change_directory(self, path: Optional[str] = None) -> str:
        """cd: move to path (HOME by default); `-` swaps with the previous dir."""
        if path is None or path == '':
            path = self.home
        if path == '-' and self.previous_dir is None:
            raise ValidationError("OLDPWD not set")
        target = self.resolve_path(path)
        entry = self.fs.get(target)
        if entry is None:
            raise NotFound(path)
        if not entry.is_dir():
            raise NotADirectory(path)
        checker = self.checker()
        if not checker.can(target, 'traverse'):
            raise PermissionDenied(path)
        self.previous_dir, self.cwd = self.cwd, target
        return target

    # Persistence

    def to_dict(self) -> dict:
        return {
            'filesystem': self.fs.to_dict(),
            'user': self.user,
            'user_stack': [list(item) for item in self.user_stack],
            'cwd': self.cwd,
            'previous_dir': self.previous_dir,
            'local_vars': dict(self.local_vars),
            'session_vars': dict(self.session_vars),
            'hostname': self.hostname,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Shell':
        fs = FileSystem.from_dict(data['filesystem'])
        shell = cls(fs=fs, user=data.get('user', 'root'),
                    hostname=data.get('hostname', 'debian'),
                    initial_dir=data.get('cwd'))
        shell.user_stack = [tuple(item) for item in data.get('user_stack', [])]
        shell.previous_dir = data.get('previous_dir')
        shell.local_vars = dict(data.get('local_vars', {}))
        shell.session_vars = dict(data.get('session_vars', {}))
        return shell
