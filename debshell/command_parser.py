#!/usr/bin/env python3
"""
Command parser for the debshell interpreter.

This module translates a raw command line into structured data: words that
remember how they were quoted, redirections, and pipelines. Nothing here
touches the filesystem or the session; expansion and execution happen later.

Design Principles:
- Single responsibility: Parse commands, don't execute them
- Quote-aware words: later stages need to know which text was quoted
- Operators are recognised only outside quotes
- Parse errors abort the whole line before anything runs
"""

import re
import logging
from typing import List, Optional, Tuple, Union
from dataclasses import dataclass, field
from enum import Enum

from .errors import ParseError, UnterminatedQuote, RedirectionSyntaxError

logger = logging.getLogger(__name__)

QUOTE_CHARS = ('"', "'")
BLANKS = (' ', '\t')
ASSIGNMENT_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*=')


class RedirectType(Enum):
    """Types of IO redirection."""
    WRITE = '>'      # Truncate or create
    APPEND = '>>'    # Append or create
    READ = '<'       # Read stdin from file


# Operator text -> redirection type, including the numeric fd synonyms
REDIRECT_OPERATORS = {
    '>': RedirectType.WRITE,
    '1>': RedirectType.WRITE,
    '>>': RedirectType.APPEND,
    '1>>': RedirectType.APPEND,
    '<': RedirectType.READ,
    '0<': RedirectType.READ,
}

PIPE = '|'


@dataclass
class Word:
    """
    A shell word made of one or more segments.

    Each segment is (text, quote) where quote is None for unquoted text,
    or the quote character that surrounded it.
    """
    segments: List[Tuple[str, Optional[str]]] = field(default_factory=list)

    @property
    def text(self) -> str:
        return ''.join(text for text, _ in self.segments)

    @property
    def quoted(self) -> bool:
        """True if any part of the word came from inside quotes."""
        return any(quote is not None for _, quote in self.segments)

    def __str__(self) -> str:
        return self.text


@dataclass
class Operator:
    """An unquoted operator token: a pipe or a redirection."""
    text: str

    def __str__(self) -> str:
        return self.text


Token = Union[Word, Operator]


@dataclass
class Redirections:
    """
    Redirection descriptor for one command.

    Output and append are mutually exclusive; at most one input file.
    """
    output: Optional[Word] = None
    append: Optional[Word] = None
    input: Optional[Word] = None

    def add(self, kind: RedirectType, target: Word, operator: str) -> None:
        if kind == RedirectType.READ:
            if self.input is not None:
                raise RedirectionSyntaxError(operator)
            self.input = target
        elif self.output is not None or self.append is not None:
            raise RedirectionSyntaxError(operator)
        elif kind == RedirectType.WRITE:
            self.output = target
        else:
            self.append = target

    @property
    def empty(self) -> bool:
        return self.output is None and self.append is None and self.input is None


@dataclass
class Command:
    """
    A single pipeline stage: its words and redirections.

    The first word is the command name. Words are still unexpanded.
    """
    words: List[Word]
    redirections: Redirections = field(default_factory=Redirections)

    @property
    def name(self) -> str:
        return self.words[0].text if self.words else ''

    @property
    def args(self) -> List[str]:
        return [w.text for w in self.words[1:]]

    def __str__(self) -> str:
        parts = [w.text for w in self.words]
        redirs = self.redirections
        if redirs.input is not None:
            parts.append(f"< {redirs.input}")
        if redirs.output is not None:
            parts.append(f"> {redirs.output}")
        if redirs.append is not None:
            parts.append(f">> {redirs.append}")
        return ' '.join(parts)


@dataclass
class Pipeline:
    """
    A pipeline of commands connected by pipes.

    Stages run left to right; each stage's buffered output is the next
    stage's input.
    """
    commands: List[Command]

    def __str__(self) -> str:
        return ' | '.join(str(cmd) for cmd in self.commands)


@dataclass
class Assignment:
    """A bare NAME=VALUE line. The value word is still unexpanded."""
    name: str
    value: Word


@dataclass
class ParsedLine:
    """Result of parsing one input line: an assignment, a pipeline, or nothing."""
    pipeline: Optional[Pipeline] = None
    assignment: Optional[Assignment] = None

    @property
    def empty(self) -> bool:
        return self.pipeline is None and self.assignment is None


def lex(line: str) -> List[Token]:
    """
    Split a raw line into words and operators.

    Whitespace outside quotes separates words. Inside quotes a backslash
    escapes the active quote character or another backslash; any other
    backslash is kept as-is. Unquoted `|`, `>`, `>>` and `<` become
    operators, and a bare `1` or `0` directly before `>`/`<` is taken as
    the file-descriptor prefix.
    """
    tokens: List[Token] = []
    segments: List[Tuple[str, Optional[str]]] = []
    buf: List[str] = []
    in_word = False
    quote: Optional[str] = None
    i = 0
    n = len(line)

    def flush_unquoted():
        if buf:
            segments.append((''.join(buf), None))
            buf.clear()

    def finish_word():
        nonlocal in_word
        flush_unquoted()
        if in_word:
            tokens.append(Word(list(segments)))
        segments.clear()
        in_word = False

    while i < n:
        c = line[i]

        if quote is not None:
            if c == '\\' and i + 1 < n and line[i + 1] in (quote, '\\'):
                buf.append(line[i + 1])
                i += 2
                continue
            if c == quote:
                segments.append((''.join(buf), quote))
                buf.clear()
                quote = None
            else:
                buf.append(c)
            i += 1
            continue

        if c in BLANKS:
            finish_word()
        elif c in QUOTE_CHARS:
            flush_unquoted()
            quote = c
            in_word = True
        elif c == PIPE:
            finish_word()
            tokens.append(Operator(PIPE))
        elif c in '<>':
            op = c
            if c == '>' and i + 1 < n and line[i + 1] == '>':
                op = '>>'
            # "1>" / "0<": the digit is a descriptor only when it is the whole word so far
            prefix = ''.join(buf)
            if not segments and prefix == ('0' if c == '<' else '1'):
                buf.clear()
                in_word = False
                op = prefix + op
            finish_word()
            tokens.append(Operator(op))
            i += len(op) - (1 if op[0].isdigit() else 0)
            continue
        else:
            buf.append(c)
            in_word = True
        i += 1

    if quote is not None:
        raise UnterminatedQuote(quote)

    finish_word()
    return tokens


def tokenize(line: str) -> List[str]:
    """Lex a line and return the plain text of its words."""
    return [str(tok) for tok in lex(line)]


def parse_assignment(line: str) -> Optional[Tuple[str, str]]:
    """Return (name, value) if the line is a lone NAME=VALUE word."""
    parsed = CommandParser().parse(line)
    if parsed.assignment is None:
        return None
    return parsed.assignment.name, parsed.assignment.value.text


class CommandParser:
    """
    Parser for debshell command lines.

    This parser handles:
    - Words with single/double quoting
    - Variable assignment lines (NAME=VALUE)
    - Pipes (|)
    - Redirections (>, >>, <, 1>, 1>>, 0<), detached or attached
    """

    def parse(self, line: str) -> ParsedLine:
        """Parse a full command line."""
        tokens = lex(line)
        if not tokens:
            return ParsedLine()

        if len(tokens) == 1 and isinstance(tokens[0], Word):
            assignment = self._as_assignment(tokens[0])
            if assignment is not None:
                return ParsedLine(assignment=assignment)

        stages = self._split_pipeline(tokens)
        commands = [self._parse_stage(stage) for stage in stages]
        pipeline = Pipeline(commands)
        logger.debug("parsed pipeline: %s", pipeline)
        return ParsedLine(pipeline=pipeline)

    def _as_assignment(self, word: Word) -> Optional[Assignment]:
        # The name part must be unquoted text at the start of the word
        if not word.segments or word.segments[0][1] is not None:
            return None
        head = word.segments[0][0]
        match = ASSIGNMENT_RE.match(head)
        if not match:
            return None
        name = head[:match.end() - 1]
        rest = head[match.end():]
        value_segments = ([(rest, None)] if rest else []) + word.segments[1:]
        return Assignment(name=name, value=Word(value_segments))

    def _split_pipeline(self, tokens: List[Token]) -> List[List[Token]]:
        stages: List[List[Token]] = [[]]
        for tok in tokens:
            if isinstance(tok, Operator) and tok.text == PIPE:
                if not stages[-1]:
                    raise RedirectionSyntaxError(PIPE)
                stages.append([])
            else:
                stages[-1].append(tok)
        if not stages[-1]:
            if len(stages) > 1:
                raise RedirectionSyntaxError(PIPE)
        return stages

    def _parse_stage(self, tokens: List[Token]) -> Command:
        words: List[Word] = []
        redirections = Redirections()
        i = 0
        while i < len(tokens):
            tok = tokens[i]
            if isinstance(tok, Operator):
                kind = REDIRECT_OPERATORS.get(tok.text)
                if kind is None:
                    raise RedirectionSyntaxError(tok.text)
                if i + 1 >= len(tokens):
                    raise RedirectionSyntaxError('newline')
                target = tokens[i + 1]
                if isinstance(target, Operator):
                    raise RedirectionSyntaxError(target.text)
                if target.text == '':
                    raise ParseError('ambiguous redirect')
                redirections.add(kind, target, tok.text)
                i += 2
            else:
                words.append(tok)
                i += 1
        return Command(words=words, redirections=redirections)
