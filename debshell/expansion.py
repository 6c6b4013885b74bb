#!/usr/bin/env python3
"""
Word expansion for debshell.

Expansion runs in a fixed order on every word of a command:
1. brace expansion   {a,b}  -> a b      (unquoted segments only)
2. variable expansion $X ${X} $?        (not inside single quotes)
3. glob expansion    * ?                (unquoted segments only)

Globs that match nothing are left as the literal pattern and recorded, so
each command can apply its own no-match policy.

Quoted segments are expanded first (variables, for double quotes) and their
special characters are swapped for private-use placeholders, so the later
stages treat them as plain text. The placeholders are restored at the end.
"""

import re
import fnmatch
import logging
from typing import Callable, List, Set
from dataclasses import dataclass, field

from .command_parser import Word

logger = logging.getLogger(__name__)

VARIABLE_RE = re.compile(
    r'\$\{(?P<braced>[a-zA-Z_][a-zA-Z0-9_]*)\}'
    r'|\$(?P<plain>[a-zA-Z_][a-zA-Z0-9_]*)'
    r'|\$(?P<special>\?)'
)
GLOB_CHARS = ('*', '?')

# Characters that lose their meaning inside quotes, and their placeholders
PROTECTED_CHARS = '{},*?$'
_PROTECT = {c: chr(0xE000 + i) for i, c in enumerate(PROTECTED_CHARS)}
_RESTORE = {v: k for k, v in _PROTECT.items()}


def protect(text: str) -> str:
    return ''.join(_PROTECT.get(c, c) for c in text)


def restore(text: str) -> str:
    return ''.join(_RESTORE.get(c, c) for c in text)


# Brace expansion

def _matching_brace(s: str, start: int) -> int:
    """Index of the '}' closing the '{' at start, or -1."""
    depth = 0
    for i in range(start, len(s)):
        if s[i] == '{':
            depth += 1
        elif s[i] == '}':
            depth -= 1
            if depth == 0:
                return i
    return -1


def _split_top_level(content: str) -> List[str]:
    """Split on commas that are not nested inside inner braces."""
    options = []
    depth = 0
    current = []
    for c in content:
        if c == '{':
            depth += 1
        elif c == '}':
            depth -= 1
        if c == ',' and depth == 0:
            options.append(''.join(current))
            current = []
        else:
            current.append(c)
    options.append(''.join(current))
    return options


def expand_braces(s: str) -> List[str]:
    """
    Expand the first brace group of s, recursively.

    Examples:
        expand_braces('project/{src,docs}')
            -> ['project/src', 'project/docs']
        expand_braces('project/{src/{js,css},docs}')
            -> ['project/src/js', 'project/src/css', 'project/docs']

    A group without a top-level comma ({a}) stays literal, as in bash.
    """
    start = s.find('{')
    while start != -1:
        end = _matching_brace(s, start)
        if end == -1:
            return [s]
        options = _split_top_level(s[start + 1:end])
        if len(options) > 1:
            break
        start = s.find('{', start + 1)
    else:
        return [s]

    prefix, suffix = s[:start], s[end + 1:]
    suffixes = expand_braces(suffix)
    results = []
    for option in options:
        for middle in expand_braces(option):
            for tail in suffixes:
                results.append(prefix + middle + tail)
    return results


# Variable expansion

def expand_variables(text: str, lookup: Callable[[str], str]) -> str:
    """Replace $NAME, ${NAME} and $? using lookup; undefined names become ''."""
    def replace(match):
        name = match.group('braced') or match.group('plain') or match.group('special')
        return lookup(name)
    return VARIABLE_RE.sub(replace, text)


def expand_word_variables(word: Word, lookup: Callable[[str], str]) -> str:
    """Variable-expand a word, leaving single-quoted segments untouched."""
    parts = []
    for text, quote in word.segments:
        if quote == "'":
            parts.append(text)
        else:
            parts.append(expand_variables(text, lookup))
    return ''.join(parts)


# Glob expansion

def has_glob(text: str) -> bool:
    return any(c in text for c in GLOB_CHARS)


def glob_match(pattern: str, name: str) -> bool:
    """Match name against a pattern where only * and ? are special."""
    if name.startswith('.') and not pattern.startswith('.'):
        return False
    translated = pattern.replace('[', '[[]')
    translated = translated.replace(_PROTECT['*'], '[*]').replace(_PROTECT['?'], '[?]')
    return fnmatch.fnmatchcase(name, restore(translated))


def expand_glob(pattern: str, fs, cwd: str, home: str = '/root') -> List[str]:
    """
    Expand one pattern against a directory of the virtual filesystem.

    Only the last path component may hold wildcards. Matches keep the
    directory prefix as the user wrote it. Returns [] on no match.
    """
    if '/' in pattern:
        dir_part, name_pattern = pattern.rsplit('/', 1)
        prefix = dir_part + '/'
        directory = fs.resolve_path(restore(dir_part) or '/', cwd, home=home)
    else:
        name_pattern = pattern
        prefix = ''
        directory = cwd

    if not fs.is_dir(directory):
        return []

    names = [name for name in fs.children(directory) if glob_match(name_pattern, name)]
    return [prefix + name for name in sorted(names)]


@dataclass
class GlobResult:
    """One argument after glob expansion."""
    pattern: str
    matches: List[str] = field(default_factory=list)
    is_glob: bool = False

    @property
    def unmatched(self) -> bool:
        return self.is_glob and not self.matches

    @property
    def words(self) -> List[str]:
        """The matches, or the literal pattern when nothing matched."""
        return self.matches or [self.pattern]


def expand_globs(args: List[str], fs, cwd: str, home: str = '/root') -> List[GlobResult]:
    """Glob-expand each argument independently."""
    results = []
    for arg in args:
        if has_glob(arg):
            results.append(GlobResult(arg, expand_glob(arg, fs, cwd, home), is_glob=True))
        else:
            results.append(GlobResult(arg))
    return results


@dataclass
class ExpandedArgs:
    """Result of expanding a command's words."""
    argv: List[str] = field(default_factory=list)
    unmatched: Set[str] = field(default_factory=set)


class Expander:
    """
    Applies brace, variable and glob expansion to parsed words.

    Args:
        fs: FileSystem used for glob matching
        lookup: variable resolver (local, then exported, then environment)
        cwd: directory that relative globs are matched in
        home: home directory used when resolving ~ in glob prefixes
    """

    def __init__(self, fs, lookup: Callable[[str], str], cwd: str, home: str = '/root'):
        self.fs = fs
        self.lookup = lookup
        self.cwd = cwd
        self.home = home

    def _protected_text(self, word: Word) -> str:
        if not word.quoted:
            return word.text
        parts = []
        for text, quote in word.segments:
            if quote is None:
                parts.append(text)
            elif quote == "'":
                parts.append(protect(text))
            else:
                parts.append(protect(expand_variables(text, self.lookup)))
        return ''.join(parts)

    def expand_args(self, words: List[Word]) -> ExpandedArgs:
        result = ExpandedArgs()
        for word in words:
            text = self._protected_text(word)
            texts = [expand_variables(braced, self.lookup) for braced in expand_braces(text)]
            for glob in expand_globs(texts, self.fs, self.cwd, self.home):
                if glob.unmatched:
                    logger.debug("glob %r matched nothing", restore(glob.pattern))
                    result.unmatched.add(restore(glob.pattern))
                result.argv.extend(restore(w) for w in glob.words)
        return result

    def expand_single(self, word: Word) -> str:
        """Variable-only expansion for redirect targets and assignment values."""
        return expand_word_variables(word, self.lookup)
