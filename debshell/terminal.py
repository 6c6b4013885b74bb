#!/usr/bin/env python3
"""
Terminal emulator for debshell.

This module ties the pieces together: it parses each input line, expands
words, resolves redirections, dispatches builtins and commands, buffers
pipeline stages, and drives the interactive password flow.

Design Principles:
- Parse errors abort the whole line before anything runs
- Command errors are reported and never end the session
- Handlers write to injected sinks; redirection swaps the sink for a buffer
- Only the last pipeline stage writes to the real output
"""

import os
import sys
import json
import inspect
import getpass
import logging
import re
from typing import Callable, List, Optional, Tuple
from dataclasses import dataclass

from .command_parser import CommandParser, Command, Pipeline
from .commands import COMMANDS
from .errors import (
    ShellError, ParseError, UsageError, FilesystemError, NotFound,
    IsADirectory, CommandNotFound,
)
from .expansion import Expander
from .filesystem import parent_path
from .password import PasswordPrompt
from .shell import Shell, CommandContext, CommandResult
from .user_commands import USER_COMMANDS

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')

Sink = Callable[[str], None]


@dataclass
class TerminalConfig:
    """Configuration for terminal session."""
    user: str = 'root'
    hostname: str = 'debian'
    initial_dir: Optional[str] = None  # Defaults to the user's home
    prompt_format: str = '{user}@{hostname}:{cwd}{sigil} '
    enable_colors: bool = True
    history_size: int = 1000
    state_file: Optional[str] = None  # JSON save point, written after each line
    log_level: str = 'WARNING'


class CommandExecutor:
    """
    Executes parsed lines against a Shell.

    Builtins operate on the session itself (cd, export, exit...); every
    other name is looked up in the command table and run with a
    CommandContext.
    """

    def __init__(self, shell: Shell, history: Optional['CommandHistory'] = None):
        """Initialize with a Shell instance and the history the builtin reads."""
        self.shell = shell
        self.history = history if history is not None else CommandHistory()
        self.parser = CommandParser()
        self.commands = dict(COMMANDS)
        self.commands.update(USER_COMMANDS)
        self.builtins = {
            'cd': self._builtin_cd,
            'pwd': self._builtin_pwd,
            'export': self._builtin_export,
            'set': self._builtin_set,
            'exit': self._builtin_exit,
            'help': self._builtin_help,
            'history': self._builtin_history,
        }

    def _expander(self) -> Expander:
        shell = self.shell
        return Expander(shell.fs, shell.lookup_variable, shell.cwd, shell.home)

    def execute_line(self, line: str, write: Sink, error: Sink) -> CommandResult:
        """Parse and run one input line."""
        try:
            parsed = self.parser.parse(line)
        except ParseError as exc:
            error(f"-bash: {exc}\n")
            self.shell.last_exit_code = exc.exit_code
            return CommandResult(exit_code=exc.exit_code)

        if parsed.assignment is not None:
            value = self._expander().expand_single(parsed.assignment.value)
            self.shell.set_local(parsed.assignment.name, value)
            logger.debug("assigned %s", parsed.assignment.name)
            return CommandResult()
        if parsed.pipeline is None:
            return CommandResult()

        result = self.execute(parsed.pipeline, write, error)
        self.shell.last_exit_code = result.exit_code
        return result

    def execute(self, pipeline: Pipeline, write: Sink, error: Sink) -> CommandResult:
        """Run a pipeline; each stage's buffered output feeds the next."""
        stdin = None
        result = CommandResult()
        last = len(pipeline.commands) - 1
        for index, command in enumerate(pipeline.commands):
            buffer: List[str] = []
            sink = write if index == last else buffer.append
            result = self._execute_command(command, stdin, sink, error)
            if result.exit_session:
                return result
            if index != last:
                stdin = ''.join(buffer)
                if stdin and not stdin.endswith('\n'):
                    stdin += '\n'
        return result

    def _execute_command(self, command: Command, stdin: Optional[str],
                         write: Sink, error: Sink) -> CommandResult:
        """Expand, resolve redirections, dispatch, then flush redirected output."""
        expander = self._expander()
        expanded = expander.expand_args(command.words)
        redirections = command.redirections

        target = None
        append = redirections.append is not None
        try:
            if redirections.input is not None:
                stdin = self._read_input(expander.expand_single(redirections.input))
            word = redirections.output or redirections.append
            if word is not None:
                target = self._prepare_output(expander.expand_single(word))
        except (FilesystemError, ParseError) as exc:
            error(f"-bash: {exc}\n")
            return CommandResult(exit_code=1)

        buffer: List[str] = []
        sink = buffer.append if target is not None else write
        if expanded.argv:
            result = self._dispatch(expanded.argv, expanded.unmatched, stdin, sink, error)
        else:
            result = CommandResult()

        if target is not None:
            self._apply_redirection(target, ''.join(buffer), append)
        return result

    def _read_input(self, path_text: str) -> str:
        if path_text == '':
            raise ParseError('ambiguous redirect')
        path = self.shell.resolve_path(path_text)
        entry = self.shell.fs.get(path)
        if entry is None:
            raise NotFound(path_text)
        if entry.is_dir():
            raise IsADirectory(path_text)
        self.shell.checker().check(path, 'read')
        return self.shell.fs.read_file(path)

    def _prepare_output(self, path_text: str) -> str:
        """Validate an output target before the command runs; nothing is created here."""
        if path_text == '':
            raise ParseError('ambiguous redirect')
        path = self.shell.resolve_path(path_text)
        fs = self.shell.fs
        entry = fs.get(path)
        if entry is not None and entry.is_dir():
            raise IsADirectory(path_text)
        if not fs.is_dir(parent_path(path)):
            raise NotFound(path_text)
        checker = self.shell.checker()
        if entry is None:
            checker.check_parent_write(path)
        else:
            checker.check(path, 'write')
        logger.debug("redirecting output to %s", path)
        return path

    def _apply_redirection(self, path: str, output: str, append: bool) -> None:
        """Write captured output to a file, newline-terminated unless empty."""
        if output and not output.endswith('\n'):
            output += '\n'
        self.shell.fs.write_file(path, output, append=append,
                                 owner=self.shell.user, group=self.shell.primary_group())

    def resolve_command(self, name: str):
        handler = self.builtins.get(name) or self.commands.get(name)
        if handler is None:
            raise CommandNotFound(name)
        return handler

    def _dispatch(self, argv: List[str], unmatched, stdin: Optional[str],
                  write: Sink, error: Sink) -> CommandResult:
        name, args = argv[0], argv[1:]
        logger.debug("dispatch %s %s", name, args)
        try:
            handler = self.resolve_command(name)
        except CommandNotFound as exc:
            error(f"-bash: {exc}\n")
            return CommandResult(exit_code=exc.exit_code)

        # bash prefixes builtin diagnostics with the shell name
        label = f"-bash: {name}" if name in self.builtins else name
        ctx = CommandContext(
            shell=self.shell, name=label, write=write, error_sink=error,
            stdin=stdin, unmatched=set(unmatched),
            run_line=lambda line: self.execute_line(line, write, error).exit_code,
        )

        if '--help' in args:
            return self._show_command_help(ctx, handler)

        try:
            outcome = handler(ctx, args)
        except UsageError as exc:
            ctx.error(str(exc))
            error(f"Try '{name} --help' for more information.\n")
            return CommandResult(exit_code=exc.exit_code)
        except ShellError as exc:
            ctx.error(str(exc))
            return CommandResult(exit_code=exc.exit_code)

        if isinstance(outcome, PasswordPrompt):
            return CommandResult(prompt=outcome)
        if isinstance(outcome, CommandResult):
            return outcome
        return CommandResult(exit_code=outcome or 0)

    # Help

    def _show_command_help(self, ctx: CommandContext, handler) -> CommandResult:
        doc = inspect.getdoc(handler)
        if not doc:
            ctx.writeln(f"{ctx.name}: no help available")
            return CommandResult(exit_code=1)
        ctx.writeln(doc)
        return CommandResult()

    def _builtin_help(self, ctx: CommandContext, args: List[str]) -> int:
        """Show help for commands.

        Usage:
            help [COMMAND]
        """
        if args:
            handler = self.resolve_command(args[0])
            return self._show_command_help(ctx, handler).exit_code

        ctx.writeln('Builtins:')
        for name in sorted(self.builtins):
            summary = (inspect.getdoc(self.builtins[name]) or '').split('\n')[0]
            ctx.writeln(f"  {name:<10} {summary}")
        ctx.writeln('Commands:')
        for name in sorted(self.commands):
            summary = (inspect.getdoc(self.commands[name]) or '').split('\n')[0]
            ctx.writeln(f"  {name:<10} {summary}")
        return 0

    # Builtins

    def _builtin_cd(self, ctx: CommandContext, args: List[str]) -> int:
        """Change the current directory.

        Usage:
            cd [DIR | - | ~]

        Examples:
            cd                     # Go to home directory
            cd /etc                # Absolute path
            cd -                   # Back to the previous directory
        """
        if len(args) > 1:
            ctx.error('too many arguments')
            return 1
        path = args[0] if args else None
        new_dir = self.shell.change_directory(path)
        if path == '-':
            ctx.writeln(new_dir)
        return 0

    def _builtin_pwd(self, ctx: CommandContext, args: List[str]) -> int:
        """Print the current directory."""
        ctx.writeln(self.shell.cwd)
        return 0

    def _builtin_export(self, ctx: CommandContext, args: List[str]) -> int:
        """Export variables to the session scope.

        Usage:
            export [NAME[=VALUE]...]

        Examples:
            export EDITOR=vim
            export PROJECT         # Promote an existing local variable
        """
        if not args:
            for name in sorted(self.shell.session_vars):
                ctx.writeln(f'declare -x {name}="{self.shell.session_vars[name]}"')
            return 0

        status = 0
        for arg in args:
            name, has_value, value = arg.partition('=')
            if not IDENTIFIER_RE.match(name):
                ctx.error(f"'{arg}': not a valid identifier")
                status = 1
                continue
            self.shell.export(name, value if has_value else None)
        return status

    def _builtin_set(self, ctx: CommandContext, args: List[str]) -> int:
        """List shell variables."""
        variables = self.shell.variables()
        for name in sorted(variables):
            ctx.writeln(f"{name}={variables[name]}")
        return 0

    def _builtin_exit(self, ctx: CommandContext, args: List[str]) -> CommandResult:
        """Leave the current su level, or the session.

        Usage:
            exit [N]
        """
        code = 0
        if args:
            if not args[0].lstrip('-').isdigit():
                ctx.error(f"{args[0]}: numeric argument required")
                code = 2
            else:
                code = int(args[0]) & 0xFF
        if self.shell.exit_user():
            return CommandResult(exit_code=code)
        return CommandResult(exit_code=code, exit_session=True)

    def _builtin_history(self, ctx: CommandContext, args: List[str]) -> int:
        """Show or clear the command history.

        Usage:
            history [-c] [N]

        Options:
            -c                     Clear the history

        Examples:
            history                # Every recorded line, numbered
            history 5              # The last five lines
        """
        if args and args[0] == '-c':
            self.history.clear()
            return 0
        count = None
        if args:
            if not args[0].isdigit():
                ctx.error(f"{args[0]}: numeric argument required")
                return 1
            count = int(args[0])
        for number, command in self.history.numbered(count):
            ctx.writeln(f"{number:>5}  {command}")
        return 0


class CommandHistory:
    """
    Numbered command history for the terminal session.

    Blank lines and immediate repeats are not recorded. When the history
    is full the oldest entry is dropped, and numbering carries on from
    where it was.
    """

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self.entries: List[str] = []
        self.first_number = 1

    def add(self, command: str):
        command = command.strip()
        if not command or (self.entries and self.entries[-1] == command):
            return
        self.entries.append(command)
        if len(self.entries) > self.max_size:
            self.entries.pop(0)
            self.first_number += 1

    def numbered(self, count: Optional[int] = None) -> List[Tuple[int, str]]:
        """The last count entries (all by default) with their history numbers."""
        items = [(self.first_number + i, command) for i, command in enumerate(self.entries)]
        if count is None:
            return items
        return items[len(items) - count:] if count > 0 else []

    def clear(self):
        self.entries = []
        self.first_number = 1


class TerminalSession:
    """
    Main terminal session manager.

    This class provides the REPL loop and manages the terminal session,
    including prompt display, password continuations and save points.
    """

    def __init__(self, config: Optional[TerminalConfig] = None,
                 shell: Optional[Shell] = None):
        """Initialize terminal session."""
        self.config = config or TerminalConfig()
        self.shell = shell or Shell(user=self.config.user,
                                    hostname=self.config.hostname,
                                    initial_dir=self.config.initial_dir)
        self.history = CommandHistory(self.config.history_size)
        self.executor = CommandExecutor(self.shell, self.history)
        self.pending: Optional[PasswordPrompt] = None
        self.running = False

    def get_prompt(self) -> str:
        """Generate the command prompt, or the password prompt when one is pending."""
        if self.pending is not None:
            return self.pending.prompt

        cwd = self.shell.cwd
        home = self.shell.home
        if home != '/' and (cwd == home or cwd.startswith(home + '/')):
            display_cwd = '~' + cwd[len(home):]
        else:
            display_cwd = cwd
        sigil = '#' if self.shell.is_root else '$'

        if self.config.enable_colors:
            # Green for user@host, blue for path
            return (f'\033[32m{self.shell.user}@{self.shell.hostname}\033[0m:'
                    f'\033[34m{display_cwd}\033[0m{sigil} ')
        return self.config.prompt_format.format(
            user=self.shell.user, hostname=self.shell.hostname,
            cwd=display_cwd, sigil=sigil)

    def execute_command(self, command_line: str) -> Optional[str]:
        """
        Execute a command line and return the output.

        While a password change is pending, the line is fed to it instead.
        Returns None when the session should end.
        """
        if self.pending is not None:
            return self._feed_password(command_line)

        self.history.add(command_line)
        chunks: List[str] = []
        result = self.executor.execute_line(command_line, chunks.append, chunks.append)
        if result.exit_session:
            return None
        if result.prompt is not None:
            self.pending = result.prompt
        else:
            self._save_point()
        return ''.join(chunks).rstrip('\n')

    def _feed_password(self, line: str) -> str:
        messages = self.pending.feed(line)
        if self.pending.finished:
            self.pending = None
            self._save_point()
        return '\n'.join(messages)

    def cancel_pending(self) -> str:
        """Abort a pending password change; nothing is written."""
        if self.pending is None:
            return ''
        messages = self.pending.cancel()
        self.pending = None
        return '\n'.join(messages)

    def run_interactive(self):
        """Run the interactive REPL loop."""
        self.running = True

        print("debshell - type 'help' for commands, 'exit' to quit")

        while self.running:
            try:
                prompt = self.get_prompt()
                if self.pending is not None:
                    command_line = getpass.getpass(prompt)
                else:
                    command_line = input(prompt)

                output = self.execute_command(command_line)
                if output is None:
                    break
                if output:
                    print(output)

            except KeyboardInterrupt:
                print("^C")
                message = self.cancel_pending()
                if message:
                    print(message)
                continue
            except EOFError:
                print()
                if self.pending is not None:
                    self.cancel_pending()
                    continue
                break
            except Exception:
                logger.exception("internal error while running %r", command_line)

        self.running = False
        print("logout")

    def run_command(self, command_line: str) -> str:
        """
        Run a single command and return output.

        This method is useful for non-interactive use.
        """
        output = self.execute_command(command_line)
        return output if output is not None else ''

    def run_script(self, script_lines: List[str]) -> List[str]:
        """
        Run a script (list of command lines) and return outputs.
        """
        outputs = []
        for line in script_lines:
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            output = self.execute_command(line)
            if output is None:
                break
            outputs.append(output)

        return outputs

    # Persistence

    def _save_point(self) -> None:
        if self.config.state_file:
            self.save_state(self.config.state_file)

    def save_state(self, path: str) -> None:
        """Write the filesystem, session variables and history to a JSON file."""
        data = self.shell.to_dict()
        data['history'] = list(self.history.entries)
        with open(path, 'w') as f:
            json.dump(data, f)
        logger.debug("state saved to %s", path)

    def load_state(self, path: str) -> None:
        """Replace the session with one loaded from a JSON state file."""
        with open(path) as f:
            data = json.load(f)
        self.shell = Shell.from_dict(data)
        self.history.clear()
        for command in data.get('history', []):
            self.history.add(command)
        self.executor = CommandExecutor(self.shell, self.history)
        self.pending = None
        logger.debug("state loaded from %s", path)


def main():
    """Main entry point for the debshell terminal."""
    import argparse

    parser = argparse.ArgumentParser(description='debshell - Debian shell over a virtual filesystem')
    parser.add_argument('-c', '--command', help='Execute command and exit')
    parser.add_argument('-u', '--user', help='Start as this user', default='root')
    parser.add_argument('-d', '--directory', help='Set initial directory', default=None)
    parser.add_argument('--state', help='JSON state file to load and save after each line')
    parser.add_argument('--no-color', action='store_true', help='Disable prompt colors')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    config = TerminalConfig(
        user=args.user,
        initial_dir=args.directory,
        enable_colors=not args.no_color,
        state_file=args.state,
        log_level='DEBUG' if args.verbose else 'WARNING',
    )
    logging.basicConfig(level=getattr(logging, config.log_level),
                        format='%(levelname)s %(name)s: %(message)s')

    try:
        session = TerminalSession(config=config)
    except ShellError as exc:
        print(f"debshell: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.state and os.path.exists(args.state):
        session.load_state(args.state)

    if args.command:
        output = session.run_command(args.command)
        if output:
            print(output)
        sys.exit(session.shell.last_exit_code)
    else:
        session.run_interactive()


if __name__ == '__main__':
    main()
