#!/usr/bin/env python3
"""
Permission engine for debshell.

Two concerns live here:
- chmod arithmetic: numeric (755) and symbolic (u+x,g=r) mode expressions
  applied to 10-character permission strings
- access checks: may a principal read/write/execute/traverse/list a path

Permission strings are the ls(1) form: type char, then owner, group and
other triplets, e.g. "drwxr-xr-x".
"""

import re
import logging
from enum import IntEnum
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Tuple

from .errors import ValidationError, PermissionDenied, OperationNotPermitted
from .filesystem import Entry, FileSystem, normalize_path, parent_path

logger = logging.getLogger(__name__)

NUMERIC_MODE_RE = re.compile(r'^0?([0-7]{3})$')
SYMBOLIC_CLAUSE_RE = re.compile(r'^([augo]*)([+\-=])([rwx]*)$')


class Mode(IntEnum):
    """Unix-style permission bits."""
    IRUSR = 0o400  # owner read
    IWUSR = 0o200  # owner write
    IXUSR = 0o100  # owner execute
    IRGRP = 0o040  # group read
    IWGRP = 0o020  # group write
    IXGRP = 0o010  # group execute
    IROTH = 0o004  # other read
    IWOTH = 0o002  # other write
    IXOTH = 0o001  # other execute


# Bits in the order they appear in a permission string
_STRING_BITS = [
    (Mode.IRUSR, 'r'), (Mode.IWUSR, 'w'), (Mode.IXUSR, 'x'),
    (Mode.IRGRP, 'r'), (Mode.IWGRP, 'w'), (Mode.IXGRP, 'x'),
    (Mode.IROTH, 'r'), (Mode.IWOTH, 'w'), (Mode.IXOTH, 'x'),
]

_WHO_MASKS = {'u': 0o700, 'g': 0o070, 'o': 0o007, 'a': 0o777}
_PERM_BITS = {'r': 0o444, 'w': 0o222, 'x': 0o111}


def mode_to_bits(permissions: str) -> int:
    """'-rwxr-xr-x' -> 0o755"""
    bits = 0
    for (bit, char), actual in zip(_STRING_BITS, permissions[1:10]):
        if actual == char:
            bits |= bit
    return bits


def format_mode(type_char: str, bits: int) -> str:
    """('-', 0o755) -> '-rwxr-xr-x'"""
    result = type_char
    for bit, char in _STRING_BITS:
        result += char if bits & bit else '-'
    return result


@dataclass
class ModeSpec:
    """
    A parsed chmod mode expression.

    Numeric specs set absolute bits; symbolic specs are a list of
    (mask, op, bits) clauses applied left to right.
    """
    text: str
    absolute: int = -1
    clauses: List[Tuple[int, str, int]] = field(default_factory=list)

    def apply_bits(self, current: int) -> int:
        if self.absolute >= 0:
            return self.absolute
        result = current
        for mask, op, bits in self.clauses:
            bits &= mask
            if op == '+':
                result |= bits
            elif op == '-':
                result &= ~bits
            else:
                result = (result & ~mask) | bits
        return result

    def apply(self, permissions: str) -> str:
        """Apply to a permission string, keeping its type character."""
        return format_mode(permissions[0], self.apply_bits(mode_to_bits(permissions)))


def parse_mode(text: str) -> ModeSpec:
    """
    Parse a numeric or symbolic mode, validating every clause up front.

    Raises ValidationError("invalid mode: 'TEXT'") on bad syntax.
    """
    match = NUMERIC_MODE_RE.match(text)
    if match:
        return ModeSpec(text=text, absolute=int(match.group(1), 8))
    if text.isdigit():
        raise ValidationError(f"invalid mode: '{text}'")

    clauses = []
    for clause in text.split(','):
        match = SYMBOLIC_CLAUSE_RE.match(clause)
        if not match:
            raise ValidationError(f"invalid mode: '{text}'")
        who, op, perms = match.groups()
        mask = 0
        for w in who or 'a':
            mask |= _WHO_MASKS[w]
        bits = 0
        for p in perms:
            bits |= _PERM_BITS[p]
        clauses.append((mask, op, bits))
    return ModeSpec(text=text, clauses=clauses)


def apply_mode(fs: FileSystem, path: str, spec: ModeSpec, recursive: bool = False) -> List[str]:
    """Apply a mode to path (and its subtree with recursive). Returns changed paths."""
    path = normalize_path(path)
    targets = [path]
    if recursive and fs.is_dir(path):
        targets += fs.descendants(path)
    for target in targets:
        entry = fs.stat(target)
        entry.permissions = spec.apply(entry.permissions)
    logger.debug("chmod %s on %d entries under %s", spec.text, len(targets), path)
    return targets


@dataclass(frozen=True)
class Principal:
    """The acting user: name, ids and the names of all groups it belongs to."""
    name: str
    uid: int
    gid: int
    groups: FrozenSet[str] = frozenset()

    @property
    def is_root(self) -> bool:
        return self.uid == 0


# operation -> permission character in the applicable triplet
OPERATIONS = {
    'read': 'r',
    'write': 'w',
    'execute': 'x',
    'traverse': 'x',
    'list': 'r',
}


class PermissionChecker:
    """
    Access checks for one principal against the filesystem.

    Root bypasses every check except execute on a regular file, which
    still needs at least one x bit. Everyone else gets the owner triplet
    if they own the entry, else the group triplet if they are in its
    group, else the other triplet.
    """

    def __init__(self, fs: FileSystem, principal: Principal):
        self.fs = fs
        self.principal = principal

    def _triplet(self, entry: Entry) -> str:
        perms = entry.permissions
        if entry.owner == self.principal.name:
            return perms[1:4]
        if entry.group in self.principal.groups:
            return perms[4:7]
        return perms[7:10]

    def allowed(self, entry: Entry, operation: str) -> bool:
        char = OPERATIONS[operation]
        if self.principal.is_root:
            if operation == 'execute' and entry.is_file():
                return 'x' in entry.permissions[1:10]
            return True
        return char in self._triplet(entry)

    def check_ancestors(self, path: str) -> None:
        """Every directory above path must be traversable."""
        path = normalize_path(path)
        if path == '/':
            return
        ancestors = ['/']
        current = ''
        for part in parent_path(path).strip('/').split('/'):
            if part:
                current = f"{current}/{part}"
                ancestors.append(current)
        for ancestor in ancestors:
            entry = self.fs.get(ancestor)
            if entry is None:
                return
            if entry.is_dir() and not self.allowed(entry, 'traverse'):
                raise PermissionDenied(path)

    def check(self, path: str, operation: str) -> None:
        """Raise PermissionDenied unless operation is allowed on path."""
        self.check_ancestors(path)
        entry = self.fs.get(path)
        if entry is not None and not self.allowed(entry, operation):
            raise PermissionDenied(path)

    def can(self, path: str, operation: str) -> bool:
        try:
            self.check(path, operation)
        except PermissionDenied:
            return False
        return True

    def check_parent_write(self, path: str) -> None:
        """Creating, deleting or renaming path needs write+traverse on its parent."""
        parent = parent_path(normalize_path(path))
        self.check_ancestors(path)
        entry = self.fs.get(parent)
        if entry is not None and not (self.allowed(entry, 'write') and
                                      self.allowed(entry, 'traverse')):
            raise PermissionDenied(path)

    def check_owner(self, path: str) -> None:
        """chmod-style ownership check: only root or the owner."""
        entry = self.fs.stat(path)
        if not self.principal.is_root and entry.owner != self.principal.name:
            raise OperationNotPermitted(path)

    def check_chown(self, path: str, owner: Optional[str], group: Optional[str]) -> None:
        """
        chown rules. Root may change anything. The owner of a file may
        only hand it to one of its own groups, never to another user.
        """
        if self.principal.is_root:
            return
        entry = self.fs.stat(path)
        if entry.owner != self.principal.name:
            raise OperationNotPermitted(path)
        if owner is not None and owner != entry.owner:
            raise OperationNotPermitted(path)
        if group is not None and group != entry.group and group not in self.principal.groups:
            raise OperationNotPermitted(path)
