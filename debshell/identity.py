#!/usr/bin/env python3
"""
Identity store for debshell: users, groups and passwords.

The credential database is not cached anywhere. It lives in three text
files of the virtual filesystem and is parsed on every read:

    /etc/passwd   username:x:uid:gid:gecos:home:shell
    /etc/shadow   username:hash:lastchanged:min:max:warn:inactive:expire:
    /etc/group    groupname:x:gid:member1,member2

Composite mutations (useradd, userdel, usermod) take a snapshot of the
three files first and restore it if any step fails.

Design Principles:
- Records are plain dataclasses with parse/serialize
- Every validation happens before the first write
- Rollback covers the identity files, not the home directory tree
"""

import re
import base64
import logging
import time
from datetime import date, datetime, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from .errors import ShellError, ValidationError, FileExists, TransactionError
from .filesystem import FileSystem, Entry, join_path, parent_path, is_within
from .permissions import Principal

logger = logging.getLogger(__name__)

PASSWD = '/etc/passwd'
SHADOW = '/etc/shadow'
GROUP = '/etc/group'
SHELLS = '/etc/shells'
SKEL = '/etc/skel'
IDENTITY_FILES = (PASSWD, SHADOW, GROUP)

NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]{0,31}$')
FIRST_UID = 1000
FIRST_SYSTEM_GID = 100
EPOCH = date(1970, 1, 1)

HASH_PREFIX = '$6$rounds=656000$salt$'

DEFAULT_PASSWD = """root:x:0:0:root:/root:/bin/bash
daemon:x:1:1:daemon:/usr/sbin:/usr/sbin/nologin
bin:x:2:2:bin:/bin:/usr/sbin/nologin
sys:x:3:3:sys:/dev:/usr/sbin/nologin
nobody:x:65534:65534:nobody:/nonexistent:/usr/sbin/nologin
"""

DEFAULT_SHADOW = """root:$6$rounds=656000$YJBFzBTWdhk$fakehashedpassword:{days}:0:99999:7:::
daemon:*:{days}:0:99999:7:::
bin:*:{days}:0:99999:7:::
sys:*:{days}:0:99999:7:::
nobody:*:{days}:0:99999:7:::
"""

DEFAULT_GROUP = """root:x:0:
daemon:x:1:
bin:x:2:
sys:x:3:
adm:x:4:
sudo:x:27:
users:x:100:
nogroup:x:65534:
"""

DEFAULT_SHELLS = """# /etc/shells: valid login shells
/bin/sh
/usr/bin/sh
/bin/bash
/usr/bin/bash
/bin/rbash
/usr/bin/rbash
/bin/dash
/usr/bin/dash
"""

SKEL_FILES = {
    '.bashrc': """# ~/.bashrc: executed by bash(1) for non-login shells.

HISTCONTROL=ignoreboth
HISTSIZE=1000
HISTFILESIZE=2000

alias ll='ls -alF'
alias la='ls -A'
alias l='ls -CF'
""",
    '.profile': """# ~/.profile: executed by the command interpreter for login shells.

if [ -n "$BASH_VERSION" ]; then
    if [ -f "$HOME/.bashrc" ]; then
        . "$HOME/.bashrc"
    fi
fi
""",
    '.bash_logout': """# ~/.bash_logout: executed by bash(1) when login shell exits.
""",
}


def days_since_epoch(when: Optional[float] = None) -> int:
    return int((when if when is not None else time.time()) // 86400)


def hash_password(password: str) -> str:
    """Simulated SHA-512 crypt string. Not real cryptography."""
    encoded = base64.b64encode((password + 'salt').encode('utf-8')).decode('ascii')
    return HASH_PREFIX + encoded


def validate_name(name: str, kind: str = 'user') -> None:
    if not NAME_RE.match(name):
        raise ValidationError(f"invalid {kind} name '{name}'")


def parse_expiry(value: str) -> str:
    """'YYYY-MM-DD' -> days since epoch as a string; '' clears the field."""
    if value == '' or value == '-1':
        return ''
    try:
        parsed = datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f"invalid date '{value}'")
    return str((parsed - EPOCH).days)


# Records

@dataclass
class PasswdEntry:
    username: str
    password: str = 'x'
    uid: int = 0
    gid: int = 0
    gecos: str = ''
    home: str = '/'
    shell: str = '/bin/bash'

    @classmethod
    def parse(cls, line: str) -> 'PasswdEntry':
        parts = line.split(':')
        if len(parts) != 7:
            raise ValidationError(f"malformed passwd line: {line}")
        name, password, uid, gid, gecos, home, shell = parts
        return cls(name, password, int(uid), int(gid), gecos, home, shell)

    def serialize(self) -> str:
        return ':'.join([self.username, self.password, str(self.uid), str(self.gid),
                         self.gecos, self.home, self.shell])


@dataclass
class ShadowEntry:
    """Aging fields are kept as strings so empty fields survive a round trip."""
    username: str
    hash: str = '!'
    last_changed: str = ''
    min_age: str = '0'
    max_age: str = '99999'
    warn: str = '7'
    inactive: str = ''
    expire: str = ''

    @classmethod
    def parse(cls, line: str) -> 'ShadowEntry':
        parts = line.split(':')
        if len(parts) < 2:
            raise ValidationError(f"malformed shadow line: {line}")
        parts += [''] * (8 - len(parts))
        return cls(*parts[:8])

    def serialize(self) -> str:
        return ':'.join([self.username, self.hash, self.last_changed, self.min_age,
                         self.max_age, self.warn, self.inactive, self.expire, ''])

    @property
    def locked(self) -> bool:
        return self.hash.startswith('!') or self.hash.startswith('*')

    @property
    def status(self) -> str:
        """passwd -S status letter: L(ocked), NP (no password) or P."""
        if self.hash == '':
            return 'NP'
        return 'L' if self.locked else 'P'


@dataclass
class GroupEntry:
    name: str
    password: str = 'x'
    gid: int = 0
    members: List[str] = field(default_factory=list)

    @classmethod
    def parse(cls, line: str) -> 'GroupEntry':
        parts = line.split(':')
        if len(parts) != 4:
            raise ValidationError(f"malformed group line: {line}")
        name, password, gid, members = parts
        return cls(name, password, int(gid), [m for m in members.split(',') if m])

    def serialize(self) -> str:
        return ':'.join([self.name, self.password, str(self.gid), ','.join(self.members)])

    def add_member(self, username: str) -> None:
        if username not in self.members:
            self.members.append(username)

    def remove_member(self, username: str) -> None:
        self.members = [m for m in self.members if m != username]


Record = Union[PasswdEntry, ShadowEntry, GroupEntry]


def parse_records(text: str, record_type) -> List:
    """Parse one record per line; blank lines and # comments are skipped."""
    records = []
    for line in text.splitlines():
        if not line.strip() or line.startswith('#'):
            continue
        records.append(record_type.parse(line))
    return records


def serialize_records(records: List[Record]) -> str:
    return ''.join(record.serialize() + '\n' for record in records)


@dataclass
class UserChanges:
    """Requested usermod changes. None means "leave unchanged"."""
    comment: Optional[str] = None
    home: Optional[str] = None
    move_home: bool = False
    expire: Optional[str] = None
    gid: Optional[str] = None
    groups: Optional[List[str]] = None
    append: bool = False
    login: Optional[str] = None
    lock: bool = False
    unlock: bool = False
    shell: Optional[str] = None
    uid: Optional[int] = None


class IdentityStore:
    """
    Users, groups and passwords backed by the virtual /etc files.

    All reads parse the files afresh; all writes serialize whole files.
    """

    def __init__(self, fs: FileSystem):
        self.fs = fs

    # Installation

    def initialize(self) -> None:
        """Install the default identity files and /etc/skel if missing."""
        days = days_since_epoch()
        defaults = [
            (PASSWD, DEFAULT_PASSWD, '-rw-r--r--'),
            (SHADOW, DEFAULT_SHADOW.format(days=days), '-rw-------'),
            (GROUP, DEFAULT_GROUP, '-rw-r--r--'),
            (SHELLS, DEFAULT_SHELLS, '-rw-r--r--'),
        ]
        self.fs.mkdir('/etc', parents=True)
        for path, content, permissions in defaults:
            if not self.fs.exists(path):
                self.fs.create_file(path, content, permissions=permissions)
        if not self.fs.exists(SKEL):
            self.fs.mkdir(SKEL)
            for name, content in SKEL_FILES.items():
                self.fs.create_file(join_path(SKEL, name), content)

    # Raw file access

    def _read(self, path: str) -> str:
        entry = self.fs.get(path)
        if entry is None or entry.is_dir():
            return ''
        return entry.content

    def _write(self, path: str, records: List[Record]) -> None:
        self.fs.write_file(path, serialize_records(records))

    def users(self) -> List[PasswdEntry]:
        return parse_records(self._read(PASSWD), PasswdEntry)

    def shadows(self) -> List[ShadowEntry]:
        return parse_records(self._read(SHADOW), ShadowEntry)

    def groups(self) -> List[GroupEntry]:
        return parse_records(self._read(GROUP), GroupEntry)

    def valid_shells(self) -> List[str]:
        return [line.strip() for line in self._read(SHELLS).splitlines()
                if line.strip() and not line.startswith('#')]

    def snapshot(self) -> Dict[str, Optional[Entry]]:
        return self.fs.snapshot(list(IDENTITY_FILES))

    def restore(self, backup: Dict[str, Optional[Entry]]) -> None:
        self.fs.restore(backup)

    # Lookups

    def lookup_user(self, username: str) -> Optional[PasswdEntry]:
        for user in self.users():
            if user.username == username:
                return user
        return None

    def lookup_uid(self, uid: int) -> Optional[PasswdEntry]:
        for user in self.users():
            if user.uid == uid:
                return user
        return None

    def lookup_shadow(self, username: str) -> Optional[ShadowEntry]:
        for entry in self.shadows():
            if entry.username == username:
                return entry
        return None

    def lookup_group(self, name_or_gid: Union[str, int]) -> Optional[GroupEntry]:
        """Find a group by name, or by gid when given a number or digit string."""
        groups = self.groups()
        for group in groups:
            if group.name == name_or_gid:
                return group
        if isinstance(name_or_gid, int) or str(name_or_gid).isdigit():
            gid = int(name_or_gid)
            for group in groups:
                if group.gid == gid:
                    return group
        return None

    def user_groups(self, username: str) -> List[GroupEntry]:
        """The user's primary group first, then supplementary groups in file order."""
        user = self.lookup_user(username)
        result = []
        groups = self.groups()
        if user is not None:
            result = [g for g in groups if g.gid == user.gid][:1]
        for group in groups:
            if username in group.members and group not in result:
                result.append(group)
        return result

    def primary_group_name(self, user: PasswdEntry) -> str:
        group = self.lookup_group(user.gid)
        return group.name if group else str(user.gid)

    def principal(self, username: str) -> Principal:
        user = self.lookup_user(username)
        if user is None:
            raise ValidationError(f"user '{username}' does not exist")
        names = frozenset(g.name for g in self.user_groups(username))
        return Principal(name=user.username, uid=user.uid, gid=user.gid, groups=names)

    def _next_free(self, used: List[int], start: int = FIRST_UID) -> int:
        candidate = start
        taken = set(used)
        while candidate in taken:
            candidate += 1
        return candidate

    def _require_user(self, username: str) -> PasswdEntry:
        user = self.lookup_user(username)
        if user is None:
            raise ValidationError(f"user '{username}' does not exist")
        return user

    # Account creation and removal

    def add_user(self, username: str, uid: Optional[int] = None, gid: Optional[str] = None,
                 home: Optional[str] = None, shell: Optional[str] = None,
                 gecos: str = '', create_home: bool = True) -> PasswdEntry:
        """
        Create an account (useradd).

        Without a gid, a personal group named after the user is created,
        using the uid as gid when it is free. With create_home, the home
        directory is created and populated from /etc/skel unless it
        already exists.
        """
        validate_name(username)
        users = self.users()
        if any(u.username == username for u in users):
            raise ValidationError(f"user '{username}' already exists")
        if uid is not None and any(u.uid == uid for u in users):
            raise ValidationError(f"UID {uid} is not unique")
        if uid is None:
            uid = self._next_free([u.uid for u in users])

        groups = self.groups()
        new_group = None
        if gid is not None:
            group = self.lookup_group(gid)
            if group is None:
                raise ValidationError(f"group '{gid}' does not exist")
            primary_gid = group.gid
            group_name = group.name
        else:
            if any(g.name == username for g in groups):
                raise ValidationError(
                    f"group {username} exists - if you want to add this user to that group, use -g.")
            used_gids = [g.gid for g in groups]
            primary_gid = uid if uid not in used_gids else self._next_free(used_gids)
            new_group = GroupEntry(username, 'x', primary_gid, [])
            group_name = username

        user = PasswdEntry(username, 'x', uid, primary_gid, gecos,
                           home or f"/home/{username}", shell or '/bin/bash')
        shadow = ShadowEntry(username, '!', str(days_since_epoch()))

        backup = self.snapshot()
        try:
            self._write(PASSWD, users + [user])
            self._write(SHADOW, self.shadows() + [shadow])
            if new_group is not None:
                self._write(GROUP, groups + [new_group])
            if create_home and not self.fs.exists(user.home):
                self._create_home(user.home, username, group_name)
        except ShellError as exc:
            self.restore(backup)
            logger.warning("useradd %s rolled back: %s", username, exc)
            raise TransactionError('create', exc) from exc
        logger.debug("added user %s uid=%d gid=%d", username, uid, primary_gid)
        return user

    def add_group(self, name: str, gid: Optional[int] = None, system: bool = False) -> GroupEntry:
        """
        Create an empty group (groupadd).

        Without a gid the first free one is taken, counting from 1000, or
        from 100 for a system group.
        """
        validate_name(name, 'group')
        groups = self.groups()
        if any(g.name == name for g in groups):
            raise ValidationError(f"group '{name}' already exists")
        used = [g.gid for g in groups]
        if gid is not None and gid in used:
            raise ValidationError(f"GID '{gid}' already exists")
        if gid is None:
            gid = self._next_free(used, FIRST_SYSTEM_GID if system else FIRST_UID)

        group = GroupEntry(name, 'x', gid, [])
        backup = self.snapshot()
        try:
            self._write(GROUP, groups + [group])
        except ShellError as exc:
            self.restore(backup)
            logger.warning("groupadd %s rolled back: %s", name, exc)
            raise TransactionError('create', exc) from exc
        logger.debug("added group %s gid=%d", name, gid)
        return group

    def _create_home(self, home: str, owner: str, group: str) -> None:
        self.fs.mkdir(parent_path(home), parents=True)
        self.fs.mkdir(home, owner=owner, group=group)
        if not self.fs.is_dir(SKEL):
            return
        for source in self.fs.descendants(SKEL):
            entry = self.fs.stat(source)
            target = home + source[len(SKEL):]
            if entry.is_dir():
                self.fs.mkdir(target, owner=owner, group=group, permissions=entry.permissions)
            else:
                self.fs.create_file(target, entry.content, owner=owner, group=group,
                                    permissions=entry.permissions)

    def delete_user(self, username: str, remove_home: bool = False) -> PasswdEntry:
        """
        Remove an account (userdel).

        The user leaves every member list; its personal group goes too when
        nobody else is a member.
        """
        if username == 'root':
            raise ValidationError("cannot remove the root account")
        user = self._require_user(username)

        groups = []
        for group in self.groups():
            group.remove_member(username)
            personal = group.name == username and group.gid == user.gid
            if personal and not group.members and not self._is_primary_of_other(group, username):
                continue
            groups.append(group)

        backup = self.snapshot()
        try:
            self._write(PASSWD, [u for u in self.users() if u.username != username])
            self._write(SHADOW, [s for s in self.shadows() if s.username != username])
            self._write(GROUP, groups)
        except ShellError as exc:
            self.restore(backup)
            raise TransactionError('delete', exc) from exc

        if remove_home and self.fs.is_dir(user.home) and user.home != '/':
            self.fs.remove(user.home, recursive=True)
        logger.debug("deleted user %s", username)
        return user

    def _is_primary_of_other(self, group: GroupEntry, username: str) -> bool:
        return any(u.gid == group.gid and u.username != username for u in self.users())

    # Account modification

    def validate_changes(self, user: PasswdEntry, changes: UserChanges) -> None:
        """Checks that need no mutation: names, collisions, dates."""
        if changes.login is not None and changes.login != user.username:
            validate_name(changes.login)
            if self.lookup_user(changes.login) is not None:
                raise ValidationError(f"user '{changes.login}' already exists")
        if changes.uid is not None and changes.uid != user.uid:
            other = self.lookup_uid(changes.uid)
            if other is not None and other.username != user.username:
                raise ValidationError(f"UID '{changes.uid}' already exists")
        if changes.expire is not None:
            parse_expiry(changes.expire)
        if changes.lock and changes.unlock:
            raise ValidationError("the -L and -U flags are exclusive")
        if changes.move_home and changes.home is None:
            raise ValidationError("-m flag is only allowed with the -d flag")
        if changes.append and changes.groups is None:
            raise ValidationError("-a flag is only allowed with the -G flag")

    def modify_user(self, username: str, changes: UserChanges) -> PasswdEntry:
        """
        Apply usermod changes as a four-phase transaction.

        1. properties: passwd/shadow fields, login rename in all files
        2. home move: relocate the home subtree (only with move_home)
        3. groups: primary gid and supplementary memberships
        4. ownership: re-own the user's files after a uid or login change

        Any failure restores the snapshot of passwd, group and shadow and
        raises TransactionError. Phases 2 and 4 change the filesystem tree,
        which the snapshot does not cover.
        """
        user = self._require_user(username)
        self.validate_changes(user, changes)
        new_name = changes.login or username

        backup = self.snapshot()
        phase = 'properties'
        try:
            self._apply_properties(user, changes)
            phase = 'home'
            if changes.move_home and changes.home and changes.home != user.home:
                self._move_home(user.home, changes.home)
            phase = 'groups'
            self._apply_groups(new_name, changes)
            phase = 'ownership'
            uid_changed = changes.uid is not None and changes.uid != user.uid
            if uid_changed or new_name != username:
                count = self.fs.chown_all(username, new_name)
                logger.debug("re-owned %d entries from %s to %s", count, username, new_name)
        except ShellError as exc:
            self.restore(backup)
            logger.warning("usermod %s failed in %s phase, identity files restored: %s",
                           username, phase, exc)
            raise TransactionError(phase, exc) from exc
        except Exception:
            self.restore(backup)
            raise
        return self._require_user(new_name)

    def _apply_properties(self, user: PasswdEntry, changes: UserChanges) -> None:
        old_name = user.username
        new_name = changes.login or old_name

        users = self.users()
        for entry in users:
            if entry.username != old_name:
                continue
            if changes.comment is not None:
                entry.gecos = changes.comment
            if changes.home is not None:
                entry.home = changes.home
            if changes.shell is not None:
                entry.shell = changes.shell
            if changes.uid is not None:
                entry.uid = changes.uid
            entry.username = new_name

        shadows = self.shadows()
        for entry in shadows:
            if entry.username != old_name:
                continue
            entry.username = new_name
            if changes.lock and not entry.hash.startswith('!'):
                entry.hash = '!' + entry.hash
            if changes.unlock and entry.hash.startswith('!'):
                entry.hash = entry.hash[1:]
            if changes.expire is not None:
                entry.expire = parse_expiry(changes.expire)

        groups = self.groups()
        if new_name != old_name:
            for group in groups:
                group.members = [new_name if m == old_name else m for m in group.members]

        self._write(PASSWD, users)
        self._write(SHADOW, shadows)
        self._write(GROUP, groups)
        logger.debug("usermod properties applied for %s", new_name)

    def _move_home(self, old_home: str, new_home: str) -> None:
        if self.fs.exists(new_home):
            raise FileExists(new_home)
        if is_within(new_home, old_home):
            raise ValidationError(f"cannot move '{old_home}' into itself")
        if not self.fs.is_dir(old_home):
            logger.debug("home %s does not exist, nothing to move", old_home)
            return
        self.fs.mkdir(parent_path(new_home), parents=True)
        self.fs.move(old_home, new_home)
        logger.debug("moved home %s -> %s", old_home, new_home)

    def _apply_groups(self, username: str, changes: UserChanges) -> None:
        if changes.gid is not None:
            group = self.lookup_group(changes.gid)
            if group is None:
                raise ValidationError(f"group '{changes.gid}' does not exist")
            users = self.users()
            for entry in users:
                if entry.username == username:
                    entry.gid = group.gid
            self._write(PASSWD, users)

        if changes.groups is None:
            return

        groups = self.groups()
        wanted = set()
        for name in changes.groups:
            match = None
            for group in groups:
                if group.name == name or (name.isdigit() and group.gid == int(name)):
                    match = group
                    break
            if match is None:
                raise ValidationError(f"group '{name}' does not exist")
            wanted.add(match.name)

        for group in groups:
            if group.name in wanted:
                group.add_member(username)
            elif not changes.append:
                group.remove_member(username)
        self._write(GROUP, groups)
        logger.debug("usermod groups for %s: %s", username, sorted(wanted))

    # Passwords

    def _update_shadow(self, username: str, update) -> ShadowEntry:
        self._require_user(username)
        shadows = self.shadows()
        target = None
        for entry in shadows:
            if entry.username == username:
                target = entry
        if target is None:
            target = ShadowEntry(username, '!', str(days_since_epoch()))
            shadows.append(target)
        update(target)
        self._write(SHADOW, shadows)
        return target

    def set_password(self, username: str, password: str) -> None:
        def update(entry):
            entry.hash = hash_password(password)
            entry.last_changed = str(days_since_epoch())
        self._update_shadow(username, update)
        logger.debug("password updated for %s", username)

    def lock_password(self, username: str) -> None:
        def update(entry):
            if not entry.hash.startswith('!'):
                entry.hash = '!' + entry.hash
        self._update_shadow(username, update)

    def unlock_password(self, username: str) -> None:
        shadow = self.lookup_shadow(username)
        if shadow is not None and shadow.hash == '!':
            raise ValidationError(
                "unlocking the password would result in a passwordless account.")

        def update(entry):
            if entry.hash.startswith('!'):
                entry.hash = entry.hash[1:]
        self._update_shadow(username, update)

    def delete_password(self, username: str) -> None:
        def update(entry):
            entry.hash = ''
            entry.last_changed = str(days_since_epoch())
        self._update_shadow(username, update)

    def has_password(self, username: str) -> bool:
        """True when the account has a usable (set, unlocked) password."""
        shadow = self.lookup_shadow(username)
        return shadow is not None and shadow.hash != '' and not shadow.locked

    def verify_password(self, username: str, password: str) -> bool:
        shadow = self.lookup_shadow(username)
        if shadow is None or shadow.locked:
            return False
        return shadow.hash == hash_password(password)

    def password_status(self, username: str) -> str:
        """passwd -S line: name status date min max warn inactive."""
        self._require_user(username)
        shadow = self.lookup_shadow(username) or ShadowEntry(username)
        changed = '01/01/1970'
        if shadow.last_changed.isdigit():
            changed = (EPOCH + timedelta(days=int(shadow.last_changed))).strftime('%m/%d/%Y')
        return ' '.join([
            username, shadow.status, changed,
            shadow.min_age or '0', shadow.max_age or '99999',
            shadow.warn or '7', shadow.inactive or '-1',
        ])
