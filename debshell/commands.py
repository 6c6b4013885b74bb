#!/usr/bin/env python3
"""
File commands for debshell: ls, cat, echo, mkdir, touch, mv, rm, chmod, chown.

Every handler has the signature handler(ctx, args) -> int. Output goes
through ctx.write, diagnostics through ctx.error; the return value is the
exit status. Messages follow Debian coreutils wording.

Handler docstrings double as `--help` text, so they keep the
Usage/Options/Examples layout.
"""

import math
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from .errors import (
    UsageError, ValidationError, FilesystemError, NotFound, IsADirectory,
    NotADirectory, FileExists, PermissionDenied,
)
from .filesystem import Entry, basename, join_path, parent_path, is_within
from .permissions import parse_mode, apply_mode
from .shell import CommandContext

logger = logging.getLogger(__name__)

Options = Dict[str, Union[bool, str]]


def parse_options(args: List[str], flags: str = '', valued: str = '',
                  long_options: Optional[Dict[str, str]] = None) -> Tuple[Options, List[str]]:
    """
    Split args into options and operands, getopt style.

    Short flags may be combined (-rf). Letters in valued take an argument,
    attached (-u1001) or as the next word (-u 1001). long_options maps a
    long name to its short letter. `--` ends option parsing.
    """
    long_options = long_options or {}
    options: Options = {}
    operands: List[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == '--':
            operands.extend(args[i + 1:])
            break
        if arg.startswith('--'):
            key, has_value, value = arg[2:].partition('=')
            letter = long_options.get(key)
            if letter is None:
                raise UsageError(f"unrecognized option '{arg}'")
            if letter in valued:
                if not has_value:
                    if i + 1 >= len(args):
                        raise UsageError(f"option '{arg}' requires an argument")
                    i += 1
                    value = args[i]
                options[letter] = value
            else:
                options[letter] = True
        elif arg.startswith('-') and len(arg) > 1:
            j = 1
            while j < len(arg):
                c = arg[j]
                if c in valued:
                    value = arg[j + 1:]
                    if not value:
                        if i + 1 >= len(args):
                            raise UsageError(f"option requires an argument -- '{c}'")
                        i += 1
                        value = args[i]
                    options[c] = value
                    break
                if c not in flags:
                    raise UsageError(f"invalid option -- '{c}'")
                options[c] = True
                j += 1
        else:
            operands.append(arg)
        i += 1
    return options, operands


def format_size(size: int, human: bool = False) -> str:
    """Format a byte count, ls -h style when human is set."""
    if not human or size < 1024:
        return str(size)
    value = float(size)
    for unit in 'KMGT':
        value /= 1024
        if value < 1024 or unit == 'T':
            if value < 10:
                return f"{math.ceil(value * 10) / 10:.1f}{unit}"
            return f"{math.ceil(value):.0f}{unit}"
    return str(size)


def format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime('%b %d %H:%M')


# ls

def _long_lines(entries: List[Tuple[str, Entry]], human: bool) -> List[str]:
    if not entries:
        return []
    sizes = [format_size(e.size, human) for _, e in entries]
    size_width = max(len(s) for s in sizes)
    link_width = max(len(str(e.link_count)) for _, e in entries)
    owner_width = max(len(e.owner) for _, e in entries)
    group_width = max(len(e.group) for _, e in entries)
    lines = []
    for (name, entry), size in zip(entries, sizes):
        lines.append(
            f"{entry.permissions} {entry.link_count:>{link_width}} "
            f"{entry.owner:<{owner_width}} {entry.group:<{group_width}} "
            f"{size:>{size_width}} {format_time(entry.modified)} {name}"
        )
    return lines


def _short_line(entries: List[Tuple[str, Entry]]) -> str:
    return '  '.join(name + '/' if entry.is_dir() else name for name, entry in entries)


def _list_directory(ctx: CommandContext, path: str, shown: str, options: Options,
                    header: bool) -> int:
    fs = ctx.fs
    if not ctx.checker.can(path, 'list'):
        ctx.error(f"cannot open directory '{shown}': Permission denied")
        return 2

    show_all = bool(options.get('a'))
    names = [n for n in fs.children(path) if show_all or not n.startswith('.')]
    entries = [(n, fs.stat(join_path(path, n))) for n in names]
    if show_all:
        entries = [('.', fs.stat(path)), ('..', fs.stat(parent_path(path)))] + entries

    if header:
        ctx.writeln(f"{shown}:")
    if options.get('l'):
        total = math.ceil(sum(e.size for _, e in entries) / 1024)
        ctx.writeln(f"total {total}")
        for line in _long_lines(entries, bool(options.get('h'))):
            ctx.writeln(line)
    elif entries:
        ctx.writeln(_short_line(entries))

    status = 0
    if options.get('R'):
        for name, entry in entries:
            if name in ('.', '..') or not entry.is_dir():
                continue
            child = join_path(path, name)
            ctx.writeln()
            status = max(status, _list_directory(ctx, child, join_path(shown, name),
                                                  options, True))
    return status


def cmd_ls(ctx: CommandContext, args: List[str]) -> int:
    """List directory contents.

    Usage:
        ls [OPTIONS] [PATH...]

    Options:
        -a, --all              Show hidden entries, plus . and ..
        -l                     Use long listing format
        -h, --human-readable   With -l, print sizes like 4.0K
        -R, --recursive        List subdirectories recursively

    Examples:
        ls                     # List current directory
        ls -la /etc            # Long format with hidden files
        ls -R project          # Whole tree under project
    """
    options, operands = parse_options(
        args, flags='alhR',
        long_options={'all': 'a', 'human-readable': 'h', 'recursive': 'R'})
    operands = operands or ['.']
    status = 0

    files: List[Tuple[str, Entry]] = []
    directories: List[Tuple[str, str]] = []
    for operand in operands:
        path = ctx.resolve(operand)
        entry = ctx.fs.get(path)
        if entry is None:
            ctx.error(f"cannot access '{operand}': No such file or directory")
            status = 2
            continue
        try:
            ctx.checker.check_ancestors(path)
        except PermissionDenied:
            ctx.error(f"cannot access '{operand}': Permission denied")
            status = 2
            continue
        if entry.is_dir():
            directories.append((path, operand))
        else:
            files.append((operand, entry))

    if files:
        if options.get('l'):
            for line in _long_lines(files, bool(options.get('h'))):
                ctx.writeln(line)
        else:
            ctx.writeln('  '.join(name for name, _ in files))

    header = len(operands) > 1 or bool(options.get('R'))
    for index, (path, shown) in enumerate(directories):
        if index > 0 or files:
            ctx.writeln()
        status = max(status, _list_directory(ctx, path, shown, options, header))
    return status


# cat

def cmd_cat(ctx: CommandContext, args: List[str]) -> int:
    """Concatenate files and print them.

    Usage:
        cat [OPTIONS] [FILE...]

    Options:
        -n, --number           Number all output lines
        -E, --show-ends        Display $ at end of each line

    Examples:
        cat /etc/passwd        # Show a file
        cat -n notes.txt       # With line numbers
        echo hi | cat -E       # Read standard input
    """
    options, operands = parse_options(
        args, flags='nE', long_options={'number': 'n', 'show-ends': 'E'})
    sources: List[str] = []
    status = 0

    if not operands:
        sources.append(ctx.stdin or '')
    for operand in operands:
        path = ctx.resolve(operand)
        try:
            ctx.checker.check(path, 'read')
            sources.append(ctx.fs.read_file(path))
        except FilesystemError as exc:
            ctx.error(f"{operand}: {exc.reason}")
            status = 1

    number = 0
    for content in sources:
        if not options.get('n') and not options.get('E'):
            ctx.write(content)
            continue
        for line in content.splitlines(keepends=True):
            body = line[:-1] if line.endswith('\n') else line
            ending = '\n' if line.endswith('\n') else ''
            if options.get('E') and ending:
                body += '$'
            if options.get('n'):
                number += 1
                body = f"{number:6d}  {body}"
            ctx.write(body + ending)
    return status


# echo

ESCAPES = {
    'n': '\n', 't': '\t', 'r': '\r', 'b': '\b', 'f': '\f',
    'a': '\a', 'v': '\v', '\\': '\\',
}


def interpret_escapes(text: str) -> str:
    """Backslash escapes understood by echo -e."""
    out = []
    i = 0
    while i < len(text):
        c = text[i]
        if c == '\\' and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt in ESCAPES:
                out.append(ESCAPES[nxt])
                i += 2
                continue
            if nxt == 'x':
                digits = ''
                while len(digits) < 2 and i + 2 + len(digits) < len(text) and \
                        text[i + 2 + len(digits)] in '0123456789abcdefABCDEF':
                    digits += text[i + 2 + len(digits)]
                if digits:
                    out.append(chr(int(digits, 16)))
                    i += 2 + len(digits)
                    continue
        out.append(c)
        i += 1
    return ''.join(out)


def cmd_echo(ctx: CommandContext, args: List[str]) -> int:
    """Display a line of text.

    Usage:
        echo [OPTIONS] [STRING...]

    Options:
        -n                     Do not output the trailing newline
        -e                     Interpret backslash escapes
        -E                     Do not interpret backslash escapes (default)

    Examples:
        echo "Hello World"     # Print Hello World
        echo -n no newline     # Print without newline
        echo -e 'a\\tb'         # Tab between a and b
    """
    newline = True
    escapes = False
    words = list(args)
    while words and len(words[0]) > 1 and words[0][0] == '-' and \
            all(c in 'neE' for c in words[0][1:]):
        for c in words.pop(0)[1:]:
            if c == 'n':
                newline = False
            elif c == 'e':
                escapes = True
            else:
                escapes = False

    text = ' '.join(words)
    if escapes:
        text = interpret_escapes(text)
    ctx.write(text + ('\n' if newline else ''))
    return 0


# mkdir

def cmd_mkdir(ctx: CommandContext, args: List[str]) -> int:
    """Create directories.

    Usage:
        mkdir [OPTIONS] DIRECTORY...

    Options:
        -p, --parents          Create parent directories as needed, no error if existing

    Examples:
        mkdir mydir            # Create directory
        mkdir -p a/b/c         # Create nested directories
        mkdir -p app/{src,docs}
    """
    options, operands = parse_options(args, flags='p', long_options={'parents': 'p'})
    if not operands:
        raise UsageError('missing operand')

    status = 0
    owner, group = ctx.shell.user, ctx.shell.primary_group()
    for operand in operands:
        path = ctx.resolve(operand)
        try:
            if options.get('p'):
                # Only the first missing component needs write access on its parent
                ancestor, first_missing = path, None
                while not ctx.fs.exists(ancestor):
                    first_missing = ancestor
                    ancestor = parent_path(ancestor)
                if first_missing is not None:
                    if not ctx.fs.is_dir(ancestor):
                        raise NotADirectory(operand)
                    ctx.checker.check_parent_write(first_missing)
                ctx.fs.mkdir(path, owner=owner, group=group, parents=True)
            else:
                if ctx.fs.exists(path):
                    raise FileExists(operand)
                if not ctx.fs.exists(parent_path(path)):
                    raise NotFound(operand)
                ctx.checker.check_parent_write(path)
                ctx.fs.mkdir(path, owner=owner, group=group)
        except FilesystemError as exc:
            ctx.error(f"cannot create directory '{operand}': {exc.reason}")
            status = 1
    return status


# touch

def cmd_touch(ctx: CommandContext, args: List[str]) -> int:
    """Change file timestamps, creating missing files.

    Usage:
        touch [OPTIONS] FILE...

    Options:
        -a                     Change only the access time
        -m                     Change only the modification time
        -c, --no-create        Do not create missing files
        -r, --reference=FILE   Use FILE's times instead of the current time

    Examples:
        touch newfile.txt      # Create empty file
        touch -c maybe.txt     # Only update if it exists
        touch -r ref.txt f     # Copy ref.txt's times
    """
    options, operands = parse_options(
        args, flags='amc', valued='r',
        long_options={'no-create': 'c', 'reference': 'r'})
    if not operands:
        raise UsageError('missing file operand')

    reference = None
    if 'r' in options:
        reference = ctx.fs.get(ctx.resolve(options['r']))
        if reference is None:
            ctx.error(f"failed to get attributes of '{options['r']}': No such file or directory")
            return 1

    only_access = bool(options.get('a')) and not options.get('m')
    only_modify = bool(options.get('m')) and not options.get('a')
    status = 0
    for operand in operands:
        path = ctx.resolve(operand)
        try:
            entry = ctx.fs.get(path)
            if entry is None:
                if options.get('c'):
                    continue
                if not ctx.fs.is_dir(parent_path(path)):
                    raise NotFound(operand)
                ctx.checker.check_parent_write(path)
                ctx.fs.create_file(path, owner=ctx.shell.user, group=ctx.shell.primary_group())
                if reference is None:
                    continue
            elif entry.owner != ctx.shell.user:
                ctx.checker.check(path, 'write')
            ctx.fs.touch(path, access=not only_modify, modify=not only_access,
                         reference=reference)
        except FilesystemError as exc:
            ctx.error(f"cannot touch '{operand}': {exc.reason}")
            status = 1
    return status


# mv

def cmd_mv(ctx: CommandContext, args: List[str]) -> int:
    """Move or rename files and directories.

    Usage:
        mv SOURCE DEST
        mv SOURCE... DIRECTORY

    Examples:
        mv old.txt new.txt     # Rename a file
        mv a.txt b.txt dir/    # Move several files into dir
        mv project /tmp        # Move a directory tree
    """
    _, operands = parse_options(args)
    if not operands:
        raise UsageError('missing file operand')
    if len(operands) == 1:
        raise UsageError(f"missing destination file operand after '{operands[0]}'")

    *sources, dest = operands
    dest_path = ctx.resolve(dest)
    dest_is_dir = ctx.fs.is_dir(dest_path)
    if len(sources) > 1 and not dest_is_dir:
        ctx.error(f"target '{dest}' is not a directory")
        return 1

    status = 0
    seen = set()
    for source in sources:
        src_path = ctx.resolve(source)
        if src_path in seen:
            ctx.error(f"warning: source '{source}' specified more than once")
            continue
        seen.add(src_path)

        entry = ctx.fs.get(src_path)
        if entry is None:
            ctx.error(f"cannot stat '{source}': No such file or directory")
            status = 1
            continue

        final = join_path(dest_path, basename(src_path)) if dest_is_dir else dest_path
        shown = join_path(dest, basename(src_path)) if dest_is_dir else dest
        if final == src_path:
            ctx.error(f"'{source}' and '{dest}' are the same file")
            status = 1
            continue
        if entry.is_dir() and is_within(final, src_path):
            ctx.error(f"cannot move '{source}' to a subdirectory of itself, '{dest}'")
            status = 1
            continue

        try:
            ctx.checker.check_parent_write(src_path)
            ctx.checker.check_parent_write(final)
            ctx.fs.move(src_path, final)
        except IsADirectory:
            ctx.error(f"cannot overwrite directory '{shown}' with non-directory")
            status = 1
        except NotADirectory:
            ctx.error(f"cannot overwrite non-directory '{shown}' with directory '{source}'")
            status = 1
        except FilesystemError as exc:
            ctx.error(f"cannot move '{source}' to '{dest}': {exc.reason}")
            status = 1
    return status


# rm

def cmd_rm(ctx: CommandContext, args: List[str]) -> int:
    """Remove files or directories.

    Usage:
        rm [OPTIONS] FILE...

    Options:
        -r, -R, --recursive    Remove directories and their contents
        -f, --force            Ignore nonexistent files, never report them

    Examples:
        rm file.txt            # Remove a file
        rm -r mydir            # Remove directory recursively
        rm -f *.tmp            # No error when nothing matches
    """
    options, operands = parse_options(
        args, flags='rRf', long_options={'recursive': 'r', 'force': 'f'})
    force = bool(options.get('f'))
    recursive = bool(options.get('r') or options.get('R'))
    if not operands:
        if force:
            return 0
        raise UsageError('missing operand')

    status = 0
    for operand in operands:
        if operand in ctx.unmatched:
            if not force:
                ctx.error(f"cannot remove '{operand}': No such file or directory")
                status = 1
            continue

        if operand.rstrip('/').rsplit('/', 1)[-1] in ('.', '..'):
            ctx.error(f"refusing to remove '.' or '..' directory: skipping '{operand}'")
            status = 1
            continue
        path = ctx.resolve(operand)
        if path == '/':
            ctx.error("it is dangerous to operate recursively on '/'")
            status = 1
            continue
        entry = ctx.fs.get(path)
        if entry is None:
            if not force:
                ctx.error(f"cannot remove '{operand}': No such file or directory")
                status = 1
            continue
        try:
            if entry.is_dir() and not recursive:
                raise IsADirectory(operand)
            ctx.checker.check_parent_write(path)
            ctx.fs.remove(path, recursive=recursive)
        except FilesystemError as exc:
            ctx.error(f"cannot remove '{operand}': {exc.reason}")
            status = 1
    return status


# chmod

def cmd_chmod(ctx: CommandContext, args: List[str]) -> int:
    """Change file mode bits.

    Usage:
        chmod [OPTIONS] MODE FILE...

    Options:
        -R, --recursive        Change files and directories recursively
        MODE                   Octal (755) or symbolic (u+x,g=r,o-w)

    Examples:
        chmod 755 script.sh    # rwxr-xr-x
        chmod u+x,go-w f.sh    # Symbolic clauses, left to right
        chmod -R 700 private   # Whole tree
    """
    recursive = False
    operands = []
    for arg in args:
        if arg in ('-R', '--recursive'):
            recursive = True
        else:
            operands.append(arg)
    if not operands:
        raise UsageError('missing operand')
    if len(operands) == 1:
        raise UsageError(f"missing operand after '{operands[0]}'")

    mode_text, paths = operands[0], operands[1:]
    try:
        spec = parse_mode(mode_text)
    except ValidationError as exc:
        ctx.error(str(exc))
        return 1

    status = 0
    for operand in paths:
        path = ctx.resolve(operand)
        if not ctx.fs.exists(path):
            ctx.error(f"cannot access '{operand}': No such file or directory")
            status = 1
            continue
        try:
            ctx.checker.check_ancestors(path)
            ctx.checker.check_owner(path)
        except FilesystemError as exc:
            ctx.error(f"changing permissions of '{operand}': {exc.reason}")
            status = 1
            continue
        apply_mode(ctx.fs, path, spec, recursive=recursive)
    return status


# chown

def _parse_owner_spec(ctx: CommandContext, spec: str) -> Tuple[Optional[str], Optional[str]]:
    """OWNER, OWNER:GROUP, OWNER: (login group) or :GROUP, by name or number."""
    owner_text, colon, group_text = spec.partition(':')
    owner = group = None
    if owner_text:
        user = ctx.identity.lookup_user(owner_text)
        if user is None and owner_text.isdigit():
            user = ctx.identity.lookup_uid(int(owner_text))
        if user is None:
            raise ValidationError(f"invalid user: '{spec}'")
        owner = user.username
        if colon and not group_text:
            group = ctx.identity.primary_group_name(user)
    if group_text:
        found = ctx.identity.lookup_group(group_text)
        if found is None:
            raise ValidationError(f"invalid group: '{spec}'")
        group = found.name
    return owner, group


def cmd_chown(ctx: CommandContext, args: List[str]) -> int:
    """Change file owner and group.

    Usage:
        chown [OPTIONS] OWNER[:[GROUP]] FILE...
        chown [OPTIONS] :GROUP FILE...

    Options:
        -R, --recursive        Operate on files and directories recursively
        -f, --silent           Suppress most error messages

    Only root may give a file away. The owner of a file may change its
    group to one of the groups they belong to.

    Examples:
        chown alice notes.txt          # New owner
        chown alice: notes.txt         # Owner and their login group
        chown -R bob:users /srv/data   # Whole tree
    """
    options, operands = parse_options(
        args, flags='Rf', long_options={'recursive': 'R', 'silent': 'f', 'quiet': 'f'})
    silent = bool(options.get('f'))
    if not operands:
        raise UsageError('missing operand')
    if len(operands) == 1:
        raise UsageError(f"missing operand after '{operands[0]}'")

    owner, group = _parse_owner_spec(ctx, operands[0])
    status = 0
    for operand in operands[1:]:
        path = ctx.resolve(operand)
        if not ctx.fs.exists(path):
            if not silent:
                ctx.error(f"cannot access '{operand}': No such file or directory")
            status = 1
            continue
        targets = [path]
        if options.get('R') and ctx.fs.is_dir(path):
            targets += ctx.fs.descendants(path)
        for target in targets:
            try:
                ctx.checker.check_ancestors(target)
                ctx.checker.check_chown(target, owner, group)
            except FilesystemError as exc:
                if not silent:
                    verb = 'ownership' if owner is not None else 'group'
                    ctx.error(f"changing {verb} of '{operand}': {exc.reason}")
                status = 1
                continue
            entry = ctx.fs.stat(target)
            if owner is not None:
                entry.owner = owner
            if group is not None:
                entry.group = group
        logger.debug("chown %s on %d entries under %s", operands[0], len(targets), path)
    return status


COMMANDS = {
    'ls': cmd_ls,
    'cat': cmd_cat,
    'echo': cmd_echo,
    'mkdir': cmd_mkdir,
    'touch': cmd_touch,
    'mv': cmd_mv,
    'rm': cmd_rm,
    'chmod': cmd_chmod,
    'chown': cmd_chown,
}
