#!/usr/bin/env python3
"""
debshell - a Debian-flavoured virtual filesystem.

The filesystem is a flat map from absolute path to Entry. There is no tree
object: a directory's children are the entries whose parent path is the
directory. Operations that touch a subtree (remove, move, chown) work on
every key prefixed by "dir/".

Core rules:
- Every entry except / has its parent directory in the map
- Subtree rewrites build the new key set first, then swap it in
- This module does not check permissions; commands do that through
  permissions.PermissionChecker before mutating
"""

import copy
import time
import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from .errors import (
    NotFound, NotADirectory, IsADirectory, FileExists, InvalidMove,
    OperationNotPermitted,
)

logger = logging.getLogger(__name__)

FILE = 'file'
DIRECTORY = 'dir'

FILE_DEFAULT = '-rw-r--r--'
DIR_DEFAULT = 'drwxr-xr-x'
DIR_SIZE = 4096


@dataclass
class Entry:
    """Metadata (and content, for files) of one filesystem object."""
    kind: str
    permissions: str
    owner: str = 'root'
    group: str = 'root'
    content: str = ''
    size: int = 0
    link_count: int = 1
    created: float = field(default_factory=time.time)
    modified: float = field(default_factory=time.time)
    accessed: float = field(default_factory=time.time)

    def is_dir(self) -> bool:
        return self.kind == DIRECTORY

    def is_file(self) -> bool:
        return self.kind == FILE

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_path(path: str) -> str:
    """Collapse duplicate slashes, resolve . and .. lexically, drop trailing /."""
    normalized: List[str] = []
    for part in path.split('/'):
        if part == '' or part == '.':
            continue
        elif part == '..':
            if normalized:
                normalized.pop()
        else:
            normalized.append(part)
    return '/' + '/'.join(normalized) if normalized else '/'


def resolve_path(path: str, base: str = '/', home: str = '/root',
                 previous: Optional[str] = None) -> str:
    """
    Resolve a user-supplied path to an absolute, normalized path.

    - absolute paths are normalized as-is
    - relative paths are joined to base
    - ~ and ~/x expand to home
    - - is the previous directory (falls back to base when unset)

    Callers implementing `cd -` are responsible for swapping the current
    and previous directories afterwards.
    """
    if path == '-':
        return normalize_path(previous or base)
    if path == '~' or path.startswith('~/'):
        path = home + path[1:]
    if not path:
        return normalize_path(base)
    if not path.startswith('/'):
        path = base.rstrip('/') + '/' + path
    return normalize_path(path)


def parent_path(path: str) -> str:
    """Parent directory of a normalized absolute path ('/' for '/')."""
    if path == '/':
        return '/'
    head = path.rsplit('/', 1)[0]
    return head or '/'


def basename(path: str) -> str:
    if path == '/':
        return '/'
    return path.rsplit('/', 1)[1]


def join_path(directory: str, name: str) -> str:
    return '/' + name if directory == '/' else f"{directory}/{name}"


def is_within(path: str, ancestor: str) -> bool:
    """True if path is ancestor itself or lies below it."""
    if ancestor == '/':
        return True
    return path == ancestor or path.startswith(ancestor + '/')


class FileSystem:
    """
    Flat, path-keyed virtual filesystem.

    A fresh instance holds only '/', or the Debian base tree when
    populate is true. Identity files are added by identity.IdentityStore.
    """

    BASE_DIRECTORIES = {
        '/bin': DIR_DEFAULT,
        '/etc': DIR_DEFAULT,
        '/home': DIR_DEFAULT,
        '/root': 'drwx------',
        '/tmp': 'drwxrwxrwx',
        '/usr': DIR_DEFAULT,
        '/usr/bin': DIR_DEFAULT,
        '/var': DIR_DEFAULT,
    }

    def __init__(self, populate: bool = True):
        self.entries: Dict[str, Entry] = {}
        self.entries['/'] = Entry(kind=DIRECTORY, permissions=DIR_DEFAULT,
                                  size=DIR_SIZE, link_count=2)
        if populate:
            self._init_filesystem()

    def _init_filesystem(self):
        """Create the standard top-level directories."""
        for path, permissions in self.BASE_DIRECTORIES.items():
            self.mkdir(path, permissions=permissions)

    # Path helpers

    @staticmethod
    def resolve_path(path: str, base: str = '/', home: str = '/root',
                     previous: Optional[str] = None) -> str:
        return resolve_path(path, base, home, previous)

    # Lookup

    def exists(self, path: str) -> bool:
        return normalize_path(path) in self.entries

    def get(self, path: str) -> Optional[Entry]:
        return self.entries.get(normalize_path(path))

    def stat(self, path: str) -> Entry:
        """Return the entry at path or raise NotFound."""
        entry = self.get(path)
        if entry is None:
            raise NotFound(path)
        return entry

    def is_dir(self, path: str) -> bool:
        entry = self.get(path)
        return entry is not None and entry.is_dir()

    def is_file(self, path: str) -> bool:
        entry = self.get(path)
        return entry is not None and entry.is_file()

    def children(self, directory: str) -> List[str]:
        """Sorted names of the direct children of a directory."""
        directory = normalize_path(directory)
        entry = self.stat(directory)
        if not entry.is_dir():
            raise NotADirectory(directory)
        names = [basename(path) for path in self.entries
                 if path != '/' and parent_path(path) == directory]
        return sorted(names)

    def descendants(self, directory: str) -> List[str]:
        """All paths strictly below a directory, sorted."""
        directory = normalize_path(directory)
        return sorted(path for path in self.entries
                      if path != directory and is_within(path, directory))

    def _require_parent_dir(self, path: str) -> str:
        parent = parent_path(path)
        entry = self.get(parent)
        if entry is None:
            raise NotFound(path)
        if not entry.is_dir():
            raise NotADirectory(path)
        return parent

    # Creation and content

    def create_file(self, path: str, content: str = '', owner: str = 'root',
                    group: str = 'root', permissions: str = FILE_DEFAULT) -> Entry:
        """Create a new regular file. Fails if anything exists at path."""
        path = normalize_path(path)
        if path in self.entries:
            raise FileExists(path)
        self._require_parent_dir(path)
        entry = Entry(kind=FILE, permissions=permissions, owner=owner,
                      group=group, content=content, size=len(content))
        self.entries[path] = entry
        return entry

    def write_file(self, path: str, content: str, append: bool = False,
                   owner: str = 'root', group: str = 'root') -> Entry:
        """Write (or append to) a file, creating it if needed."""
        path = normalize_path(path)
        entry = self.entries.get(path)
        if entry is None:
            return self.create_file(path, content, owner=owner, group=group)
        if entry.is_dir():
            raise IsADirectory(path)
        entry.content = entry.content + content if append else content
        entry.size = len(entry.content)
        entry.modified = time.time()
        return entry

    def read_file(self, path: str) -> str:
        entry = self.stat(path)
        if entry.is_dir():
            raise IsADirectory(path)
        entry.accessed = time.time()
        return entry.content

    def mkdir(self, path: str, owner: str = 'root', group: str = 'root',
              permissions: str = DIR_DEFAULT, parents: bool = False) -> List[str]:
        """
        Create a directory, returning the paths actually created.

        With parents, missing ancestors are created and an existing
        directory is not an error.
        """
        path = normalize_path(path)
        existing = self.entries.get(path)
        if existing is not None:
            if parents and existing.is_dir():
                return []
            raise FileExists(path)

        if not parents:
            self._require_parent_dir(path)
            self.entries[path] = Entry(kind=DIRECTORY, permissions=permissions,
                                       owner=owner, group=group,
                                       size=DIR_SIZE, link_count=2)
            return [path]

        created = []
        current = ''
        for part in path.strip('/').split('/'):
            current = f"{current}/{part}"
            entry = self.entries.get(current)
            if entry is None:
                self.entries[current] = Entry(kind=DIRECTORY, permissions=permissions,
                                              owner=owner, group=group,
                                              size=DIR_SIZE, link_count=2)
                created.append(current)
            elif not entry.is_dir():
                raise NotADirectory(current)
        return created

    def touch(self, path: str, access: bool = True, modify: bool = True,
              reference: Optional[Entry] = None) -> Entry:
        """Update the timestamps of an existing entry."""
        entry = self.stat(path)
        now = time.time()
        if access:
            entry.accessed = reference.accessed if reference else now
        if modify:
            entry.modified = reference.modified if reference else now
        return entry

    # Removal and relocation

    def remove(self, path: str, recursive: bool = False) -> List[str]:
        """Remove an entry; directories need recursive. Returns removed paths."""
        path = normalize_path(path)
        if path == '/':
            raise OperationNotPermitted(path)
        entry = self.stat(path)
        if entry.is_dir() and not recursive:
            raise IsADirectory(path)

        removed = [path] + self.descendants(path)
        self.entries = {p: e for p, e in self.entries.items() if not is_within(p, path)}
        logger.debug("removed %d entries under %s", len(removed), path)
        return removed

    def move(self, src: str, dst: str) -> List[str]:
        """
        Rename src to dst, carrying the whole subtree of a directory.

        An existing destination file is replaced. An existing destination
        directory may only be replaced by a directory, and only if empty.
        """
        src = normalize_path(src)
        dst = normalize_path(dst)
        source = self.stat(src)
        if src == '/' or src == dst:
            raise InvalidMove(src)
        if source.is_dir() and is_within(dst, src):
            raise InvalidMove(dst)
        self._require_parent_dir(dst)

        target = self.entries.get(dst)
        if target is not None:
            if target.is_dir() and not source.is_dir():
                raise IsADirectory(dst)
            if source.is_dir() and not target.is_dir():
                raise NotADirectory(dst)
            if target.is_dir() and self.descendants(dst):
                raise FileExists(dst, 'Directory not empty')

        moved = {}
        for path, entry in self.entries.items():
            if is_within(path, src):
                moved[dst + path[len(src):]] = entry
        remaining = {p: e for p, e in self.entries.items()
                     if not is_within(p, src) and p != dst}
        remaining.update(moved)

        now = time.time()
        moved[dst].modified = now
        self.entries = remaining
        logger.debug("moved %s -> %s (%d entries)", src, dst, len(moved))
        return sorted(moved)

    def chown_all(self, old_owner: str, new_owner: str) -> int:
        """Re-own every entry owned by old_owner. Returns the count."""
        count = 0
        for entry in self.entries.values():
            if entry.owner == old_owner:
                entry.owner = new_owner
                count += 1
        return count

    # Snapshots and serialization

    def snapshot(self, paths: List[str]) -> Dict[str, Optional[Entry]]:
        """Deep copies of the given entries (None for missing paths)."""
        return {path: copy.deepcopy(self.entries.get(path)) for path in paths}

    def restore(self, snapshot: Dict[str, Optional[Entry]]) -> None:
        for path, entry in snapshot.items():
            if entry is None:
                self.entries.pop(path, None)
            else:
                self.entries[path] = copy.deepcopy(entry)

    def to_dict(self) -> dict:
        return {path: entry.to_dict() for path, entry in self.entries.items()}

    @classmethod
    def from_dict(cls, data: dict) -> 'FileSystem':
        fs = cls(populate=False)
        fs.entries = {path: Entry(**fields) for path, fields in data.items()}
        return fs
