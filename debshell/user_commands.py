#!/usr/bin/env python3
"""
Account commands for debshell.

useradd, groupadd, usermod, userdel and passwd administer the identity store;
su, whoami, id and groups inspect or switch the session identity.
Administrative commands are root-only, like on Debian.
"""

import logging
from typing import List

from .commands import parse_options
from .errors import UsageError, ValidationError, TransactionError, FileExists
from .identity import UserChanges, validate_name
from .password import PasswordPrompt
from .shell import CommandContext

logger = logging.getLogger(__name__)


def _parse_id(value: str, kind: str) -> int:
    if not value.isdigit():
        raise ValidationError(f"invalid {kind} ID '{value}'")
    return int(value)


def _require_root(ctx: CommandContext) -> bool:
    if ctx.shell.is_root:
        return True
    ctx.error('Permission denied.')
    return False


def cmd_useradd(ctx: CommandContext, args: List[str]) -> int:
    """Create a new user.

    Usage:
        useradd [OPTIONS] LOGIN

    Options:
        -u UID                 Numeric user ID (default: first free >= 1000)
        -g GROUP               Primary group name or GID
        -d HOME                Home directory (default: /home/LOGIN)
        -s SHELL               Login shell (default: /bin/bash)
        -c COMMENT             GECOS field
        -m                     Create the home directory (default)
        -M                     Do not create the home directory

    Examples:
        useradd alice
        useradd -u 1500 -s /bin/sh -c "Bob B" bob
    """
    options, operands = parse_options(args, flags='mM', valued='ugdsc')
    if len(operands) != 1:
        raise UsageError('exactly one login name is required')
    if not _require_root(ctx):
        return 1

    username = operands[0]
    uid = _parse_id(options['u'], 'user') if 'u' in options else None
    create_home = not options.get('M')
    home = options.get('d') or f"/home/{username}"

    try:
        validate_name(username)
        if create_home and ctx.fs.exists(home) and ctx.identity.lookup_user(username) is None:
            ctx.error(f"warning: the home directory {home} already exists.")
            ctx.error("Not copying any file from skel directory into it.")
        ctx.identity.add_user(username, uid=uid, gid=options.get('g'), home=home,
                              shell=options.get('s'), gecos=options.get('c', ''),
                              create_home=create_home)
    except (ValidationError, TransactionError) as exc:
        ctx.error(str(exc))
        return 1
    return 0


def cmd_groupadd(ctx: CommandContext, args: List[str]) -> int:
    """Create a new group.

    Usage:
        groupadd [OPTIONS] GROUP

    Options:
        -g, --gid GID          Numeric group ID (default: first free >= 1000)
        -r, --system           Create a system group (first free >= 100)
        -f, --force            Succeed if the group exists; pick another GID if taken

    Examples:
        groupadd developers
        groupadd -g 500 staff
    """
    options, operands = parse_options(
        args, flags='rf', valued='g',
        long_options={'gid': 'g', 'system': 'r', 'force': 'f'})
    if len(operands) != 1:
        raise UsageError('exactly one group name is required')
    if not _require_root(ctx):
        return 1

    name = operands[0]
    force = bool(options.get('f'))
    try:
        validate_name(name, 'group')
        gid = _parse_id(options['g'], 'group') if 'g' in options else None
    except ValidationError as exc:
        ctx.error(str(exc))
        return 3

    groups = ctx.identity.groups()
    if any(g.name == name for g in groups):
        if force:
            return 0
        ctx.error(f"group '{name}' already exists")
        return 9
    if gid is not None and any(g.gid == gid for g in groups):
        if not force:
            ctx.error(f"GID '{gid}' already exists")
            return 4
        gid = None

    try:
        ctx.identity.add_group(name, gid=gid, system=bool(options.get('r')))
    except (ValidationError, TransactionError) as exc:
        ctx.error(str(exc))
        return 1
    return 0


def cmd_userdel(ctx: CommandContext, args: List[str]) -> int:
    """Delete a user account.

    Usage:
        userdel [OPTIONS] LOGIN

    Options:
        -r, --remove           Remove the home directory too
        -f, --force            Delete even if the user is logged in

    Examples:
        userdel alice
        userdel -r bob
    """
    options, operands = parse_options(
        args, flags='rf', long_options={'remove': 'r', 'force': 'f'})
    if len(operands) != 1:
        raise UsageError('exactly one login name is required')
    if not _require_root(ctx):
        return 1

    username = operands[0]
    user = ctx.identity.lookup_user(username)
    if user is None:
        ctx.error(f"user '{username}' does not exist")
        return 6
    if username == 'root':
        ctx.error("cannot remove the root account")
        return 1

    logged_in = [ctx.shell.user] + [name for name, _ in ctx.shell.user_stack]
    if username in logged_in and not options.get('f'):
        ctx.error(f"user {username} is currently used by process 1")
        return 8

    remove_home = bool(options.get('r'))
    if remove_home and not ctx.fs.is_dir(user.home):
        ctx.error(f"{username} home directory ({user.home}) not found")
    try:
        ctx.identity.delete_user(username, remove_home=remove_home)
    except (ValidationError, TransactionError) as exc:
        ctx.error(str(exc))
        return 1
    return 0


def _validate_home(value: str) -> None:
    if not value.startswith('/') or '..' in value.split('/') or '//' in value:
        raise ValidationError(f"invalid home directory '{value}'")


def cmd_usermod(ctx: CommandContext, args: List[str]) -> int:
    """Modify a user account.

    Usage:
        usermod [OPTIONS] LOGIN

    Options:
        -a                     Append to supplementary groups (with -G)
        -c COMMENT             New GECOS field
        -d HOME                New home directory
        -e YYYY-MM-DD          Account expiry date ('' clears it)
        -g GROUP               New primary group
        -G G1,G2               Supplementary groups
        -l NEW_LOGIN           New login name
        -L                     Lock the password
        -m                     Move the home contents (with -d)
        -s SHELL               New login shell
        -u UID                 New user ID
        -U                     Unlock the password

    Examples:
        usermod -aG sudo alice
        usermod -d /srv/bob -m bob
        usermod -l robert bob
    """
    options, operands = parse_options(args, flags='aLmU', valued='cdegGlsu')
    if len(operands) != 1:
        raise UsageError('exactly one login name is required')
    if len(options) == 0:
        ctx.error('no options')
        return 2
    if not _require_root(ctx):
        return 1

    username = operands[0]
    if ctx.identity.lookup_user(username) is None:
        ctx.error(f"user '{username}' does not exist")
        return 6

    changes = UserChanges(
        comment=options.get('c'),
        home=options.get('d'),
        move_home=bool(options.get('m')),
        expire=options.get('e'),
        gid=options.get('g'),
        append=bool(options.get('a')),
        login=options.get('l'),
        lock=bool(options.get('L')),
        unlock=bool(options.get('U')),
        shell=options.get('s'),
    )
    try:
        if 'G' in options:
            changes.groups = [g for g in options['G'].split(',') if g]
        if 'u' in options:
            changes.uid = _parse_id(options['u'], 'user')
        if changes.home is not None:
            _validate_home(changes.home)
        if changes.login is not None:
            validate_name(changes.login)
        if changes.shell is not None:
            if not changes.shell.startswith('/'):
                raise ValidationError(f"invalid shell '{changes.shell}'")
            if changes.shell not in ctx.identity.valid_shells():
                ctx.error(f"Warning: missing or non-executable shell '{changes.shell}'")
        ctx.identity.modify_user(username, changes)
    except TransactionError as exc:
        if isinstance(exc.cause, FileExists):
            ctx.error(f"directory {exc.cause.path} exists")
        else:
            ctx.error(str(exc))
        return 1
    except ValidationError as exc:
        ctx.error(str(exc))
        return 2
    return 0


def cmd_passwd(ctx: CommandContext, args: List[str]):
    """Change a user password.

    Usage:
        passwd [OPTIONS] [LOGIN]

    Options:
        -l, --lock             Lock the password
        -u, --unlock           Unlock the password
        -d, --delete           Remove the password (passwordless account)
        -S, --status           Print password status

    Examples:
        passwd                 # Change your own password
        passwd -S alice        # L, NP or P status line
        passwd -l bob          # Lock bob's password
    """
    options, operands = parse_options(
        args, flags='ludS',
        long_options={'lock': 'l', 'unlock': 'u', 'delete': 'd', 'status': 'S'})
    if len(operands) > 1:
        raise UsageError('too many arguments')

    shell = ctx.shell
    target = operands[0] if operands else shell.user
    if ctx.identity.lookup_user(target) is None:
        ctx.error(f"user '{target}' does not exist")
        return 1
    if not shell.is_root and target != shell.user:
        ctx.error(f"You may not view or modify password information for {target}.")
        return 1

    admin = [flag for flag in 'lud' if options.get(flag)]
    if admin and not shell.is_root:
        ctx.error('Permission denied.')
        return 1
    if len(admin) > 1:
        raise UsageError('only one of -l, -u, -d may be given')

    if options.get('S'):
        ctx.writeln(ctx.identity.password_status(target))
        return 0

    try:
        if options.get('l'):
            ctx.identity.lock_password(target)
        elif options.get('u'):
            ctx.identity.unlock_password(target)
        elif options.get('d'):
            ctx.identity.delete_password(target)
        else:
            require_current = not shell.is_root and ctx.identity.has_password(target)
            if require_current:
                ctx.writeln(f"Changing password for {target}.")
            return PasswordPrompt(ctx.identity, target, require_current=require_current)
    except ValidationError as exc:
        ctx.error(str(exc))
        return 3
    ctx.writeln('passwd: password changed.')
    return 0


SU_USAGE = 'Usage: su [options] [-] [<user> [<argument>...]]'


def cmd_su(ctx: CommandContext, args: List[str]) -> int:
    """Switch user.

    Usage:
        su [OPTIONS] [USER]

    Options:
        -, -l, --login         Start a login shell in USER's home
        -c COMMAND             Run COMMAND as USER, then return

    Examples:
        su                     # Become root
        su - alice             # Login shell as alice
        su -c whoami alice     # Run one command as alice
    """
    target = 'root'
    login = False
    command = None
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ('-', '-l', '--login'):
            login = True
        elif arg in ('-c', '--command'):
            if i + 1 >= len(args):
                ctx.error("option requires an argument -- 'c'")
                ctx.error_sink(SU_USAGE + '\n')
                return 1
            i += 1
            command = args[i]
        elif arg.startswith('-'):
            ctx.error(f"invalid option -- '{arg.lstrip('-')[:1]}'")
            ctx.error_sink(SU_USAGE + '\n')
            return 1
        else:
            target = arg
        i += 1

    if ctx.identity.lookup_user(target) is None:
        ctx.error(f"user {target} does not exist or the user entry does not "
                  "contain all the required fields")
        return 1

    ctx.shell.switch_user(target, login=login)
    if command is None:
        return 0
    try:
        return ctx.run_line(command) if ctx.run_line else 0
    finally:
        ctx.shell.exit_user()


def cmd_whoami(ctx: CommandContext, args: List[str]) -> int:
    """Print the effective user name.

    Usage:
        whoami
    """
    if args:
        ctx.error(f"extra operand '{args[0]}'")
        ctx.error_sink("Try 'whoami --help' for more information.\n")
        return 1
    ctx.writeln(ctx.shell.user)
    return 0


def cmd_id(ctx: CommandContext, args: List[str]) -> int:
    """Print user and group IDs.

    Usage:
        id [OPTIONS] [USER]

    Options:
        -u                     Print only the user ID
        -g                     Print only the primary group ID
        -G                     Print all group IDs
        -n                     Print names instead of numbers (with -u, -g, -G)

    Examples:
        id                     # uid=0(root) gid=0(root) groups=0(root)
        id -un                 # root
        id -Gn alice           # alice sudo
    """
    options, operands = parse_options(args, flags='ugGn')
    if len(operands) > 1:
        ctx.error(f"extra operand '{operands[1]}'")
        return 1
    username = operands[0] if operands else ctx.shell.user
    user = ctx.identity.lookup_user(username)
    if user is None:
        ctx.error(f"'{username}': no such user")
        return 1

    choices = [c for c in 'ugG' if options.get(c)]
    if len(choices) > 1:
        ctx.error('cannot print "only" of more than one choice')
        return 1
    names = bool(options.get('n'))
    if names and not choices:
        ctx.error('cannot print only names or real IDs in default format')
        return 1

    groups = ctx.identity.user_groups(username)
    primary = ctx.identity.primary_group_name(user)
    if choices == ['u']:
        ctx.writeln(user.username if names else str(user.uid))
    elif choices == ['g']:
        ctx.writeln(primary if names else str(user.gid))
    elif choices == ['G']:
        ctx.writeln(' '.join(g.name if names else str(g.gid) for g in groups))
    else:
        listed = ','.join(f"{g.gid}({g.name})" for g in groups)
        ctx.writeln(f"uid={user.uid}({user.username}) gid={user.gid}({primary}) groups={listed}")
    return 0


def cmd_groups(ctx: CommandContext, args: List[str]) -> int:
    """Print the groups a user is in.

    Usage:
        groups [USER...]

    Examples:
        groups                 # Groups of the current user
        groups alice bob       # alice : alice sudo
    """
    status = 0
    if not args:
        names = [g.name for g in ctx.identity.user_groups(ctx.shell.user)]
        ctx.writeln(' '.join(names))
        return 0
    for username in args:
        if ctx.identity.lookup_user(username) is None:
            ctx.error(f"'{username}': no such user")
            status = 1
            continue
        names = [g.name for g in ctx.identity.user_groups(username)]
        ctx.writeln(f"{username} : {' '.join(names)}")
    return status


USER_COMMANDS = {
    'useradd': cmd_useradd,
    'groupadd': cmd_groupadd,
    'userdel': cmd_userdel,
    'usermod': cmd_usermod,
    'passwd': cmd_passwd,
    'su': cmd_su,
    'whoami': cmd_whoami,
    'id': cmd_id,
    'groups': cmd_groups,
}
