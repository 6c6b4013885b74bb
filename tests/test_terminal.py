#!/usr/bin/env python3
"""
Tests for the debshell terminal emulator.

This module covers the executor (dispatch, pipelines, redirection,
builtins, variables), the terminal session (prompts, scripts, password
continuations, persistence) and the command line entry point.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import io
import json
import tempfile
import unittest
from unittest.mock import patch

from debshell.commands import COMMANDS
from debshell.shell import Shell
from debshell.terminal import (
    TerminalSession, TerminalConfig, CommandExecutor, CommandHistory, main,
)
from debshell.user_commands import USER_COMMANDS


def new_session(**kwargs):
    return TerminalSession(TerminalConfig(enable_colors=False, **kwargs))


class TestCommandExecutor(unittest.TestCase):
    """Test dispatching lines without a terminal session."""

    def setUp(self):
        self.shell = Shell()
        self.executor = CommandExecutor(self.shell)
        self.out = []

    def run_line(self, line):
        return self.executor.execute_line(line, self.out.append, self.out.append)

    def test_registry(self):
        for name in list(COMMANDS) + list(USER_COMMANDS):
            self.assertIn(name, self.executor.commands)
        for name in ('cd', 'pwd', 'export', 'set', 'exit', 'help', 'history'):
            self.assertIn(name, self.executor.builtins)

    def test_command_not_found(self):
        result = self.run_line('frobnicate --now')
        self.assertEqual(result.exit_code, 127)
        self.assertEqual(''.join(self.out), '-bash: frobnicate: command not found\n')
        self.assertEqual(self.shell.last_exit_code, 127)

    def test_success_sets_exit_code(self):
        result = self.run_line('echo ok')
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(''.join(self.out), 'ok\n')

    def test_parse_error_runs_nothing(self):
        result = self.run_line('echo hi > /tmp/a | "')
        self.assertEqual(result.exit_code, 2)
        self.assertFalse(self.shell.fs.exists('/tmp/a'))
        self.assertIn('unexpected EOF', ''.join(self.out))

    def test_empty_line(self):
        result = self.run_line('   ')
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(self.out, [])


class TestRedirection(unittest.TestCase):
    """Test output and input redirection."""

    def setUp(self):
        self.session = new_session()
        self.fs = self.session.shell.fs

    def run_command(self, line):
        return self.session.run_command(line)

    def test_write_creates_file(self):
        self.assertEqual(self.run_command('echo hi > /tmp/out.txt'), '')
        self.assertEqual(self.fs.read_file('/tmp/out.txt'), 'hi\n')
        self.assertEqual(self.fs.get('/tmp/out.txt').owner, 'root')

    def test_newline_added(self):
        self.run_command('echo -n hi > /tmp/f')
        self.assertEqual(self.fs.read_file('/tmp/f'), 'hi\n')

    def test_truncate_and_append(self):
        self.run_command('echo a > /tmp/f')
        self.run_command('echo b >> /tmp/f')
        self.assertEqual(self.fs.read_file('/tmp/f'), 'a\nb\n')
        self.run_command('echo c 1> /tmp/f')
        self.assertEqual(self.fs.read_file('/tmp/f'), 'c\n')

    def test_redirect_only_creates_empty_file(self):
        self.run_command('> /tmp/empty')
        self.assertEqual(self.fs.read_file('/tmp/empty'), '')

    def test_missing_parent_creates_nothing(self):
        output = self.run_command('echo hi > /nodir/f')
        self.assertEqual(output, '-bash: /nodir/f: No such file or directory')
        self.assertFalse(self.fs.exists('/nodir'))
        self.assertEqual(self.session.shell.last_exit_code, 1)

    def test_directory_target(self):
        self.assertEqual(self.run_command('echo hi > /tmp'), '-bash: /tmp: Is a directory')

    def test_target_is_variable_expanded(self):
        self.run_command('F=/tmp/v.txt')
        self.run_command('echo hi > $F')
        self.assertEqual(self.run_command('cat /tmp/v.txt'), 'hi')

    def test_errors_are_not_redirected(self):
        output = self.run_command('ls /nope > /tmp/out')
        self.assertEqual(output, "ls: cannot access '/nope': No such file or directory")
        self.assertEqual(self.fs.read_file('/tmp/out'), '')

    def test_input(self):
        self.run_command('echo data > /tmp/in')
        self.assertEqual(self.run_command('cat < /tmp/in'), 'data')
        self.assertEqual(self.run_command('cat -n 0< /tmp/in'), '     1  data')
        self.assertEqual(self.run_command('cat < /nope'),
                         '-bash: /nope: No such file or directory')

    def test_permission_denied(self):
        self.run_command('useradd alice')
        self.run_command('su alice')
        self.assertEqual(self.run_command('echo hi > /etc/x'), '-bash: /etc/x: Permission denied')
        self.assertFalse(self.fs.exists('/etc/x'))
        self.assertEqual(self.run_command('echo hi > /etc/passwd'),
                         '-bash: /etc/passwd: Permission denied')

    def test_owner_is_current_user(self):
        self.run_command('useradd alice')
        self.run_command('su alice')
        self.run_command('echo mine > /tmp/mine')
        entry = self.fs.get('/tmp/mine')
        self.assertEqual((entry.owner, entry.group), ('alice', 'alice'))


class TestPipelines(unittest.TestCase):
    """Test pipelines of buffered stages."""

    def setUp(self):
        self.session = new_session()

    def test_two_stages(self):
        self.assertEqual(self.session.run_command('echo hello | cat -n'), '     1  hello')

    def test_three_stages(self):
        output = self.session.run_command('cat /etc/group | cat | cat -n')
        self.assertTrue(output.startswith('     1  root:x:0:'))

    def test_stage_output_gets_newline(self):
        self.assertEqual(self.session.run_command('echo -n abc | cat -E'), 'abc$')

    def test_exit_code_from_last_stage(self):
        self.session.run_command('ls /nope | cat')
        self.assertEqual(self.session.shell.last_exit_code, 0)
        self.session.run_command('echo hi | ls /nope')
        self.assertEqual(self.session.shell.last_exit_code, 2)

    def test_redirect_inside_pipeline(self):
        output = self.session.run_command('echo hi > /tmp/mid | cat')
        self.assertEqual(output, '')
        self.assertEqual(self.session.shell.fs.read_file('/tmp/mid'), 'hi\n')

    def test_syntax_error(self):
        self.assertEqual(self.session.run_command('ls |'),
                         "-bash: syntax error near unexpected token `|'")


class TestVariables(unittest.TestCase):
    """Test assignments, export and expansion."""

    def setUp(self):
        self.session = new_session()

    def run_command(self, line):
        return self.session.run_command(line)

    def test_assignment_and_expansion(self):
        self.run_command('X=hello')
        self.assertEqual(self.run_command('echo $X'), 'hello')
        self.assertEqual(self.run_command('echo "${X} world"'), 'hello world')
        self.assertEqual(self.run_command("echo '$X'"), '$X')

    def test_assignment_value_is_expanded(self):
        self.run_command('X=base')
        self.run_command('Y=$X-suffix')
        self.assertEqual(self.run_command('echo $Y'), 'base-suffix')

    def test_environment(self):
        self.assertEqual(self.run_command('echo $USER $HOME'), 'root /root')
        self.run_command('cd /tmp')
        self.assertEqual(self.run_command('echo $PWD $OLDPWD'), '/tmp /root')
        self.assertEqual(self.run_command('echo $UNDEFINED'), '')

    def test_exit_status(self):
        self.run_command('ls /nope')
        self.assertEqual(self.run_command('echo $?'), '2')
        self.assertEqual(self.run_command('echo $?'), '0')

    def test_local_shadows_exported(self):
        self.run_command('export X=exported')
        self.run_command('X=local')
        self.assertEqual(self.run_command('echo $X'), 'local')

    def test_local_over_session_over_environment(self):
        self.assertEqual(self.run_command('echo $HOME'), '/root')
        self.run_command('export HOME=/session')
        self.assertEqual(self.run_command('echo $HOME'), '/session')
        self.run_command('HOME=/local')
        self.assertEqual(self.run_command('echo $HOME'), '/local')
        self.assertEqual(self.run_command('echo "${HOME}"'), '/local')

    def test_exit_status_in_quotes(self):
        self.run_command('frobnicate')
        self.assertEqual(self.run_command('echo "status $?"'), 'status 127')
        self.assertEqual(self.run_command("echo '$?'"), '$?')

    def test_export(self):
        self.run_command('FOO=bar')
        self.run_command('export FOO')
        self.assertEqual(self.run_command('export'), 'declare -x FOO="bar"')
        self.assertNotIn('FOO', self.session.shell.local_vars)

    def test_export_invalid_identifier(self):
        self.assertEqual(self.run_command('export 1X=2'),
                         "-bash: export: '1X=2': not a valid identifier")
        self.assertEqual(self.session.shell.last_exit_code, 1)

    def test_set_lists_variables(self):
        self.run_command('X=1')
        lines = self.run_command('set').split('\n')
        self.assertIn('X=1', lines)
        self.assertIn('HOME=/root', lines)


class TestBuiltins(unittest.TestCase):
    """Test cd, pwd, exit and help."""

    def setUp(self):
        self.session = new_session()

    def run_command(self, line):
        return self.session.run_command(line)

    def test_cd_and_pwd(self):
        self.assertEqual(self.run_command('pwd'), '/root')
        self.run_command('cd /etc')
        self.assertEqual(self.run_command('pwd'), '/etc')
        self.run_command('cd ..')
        self.assertEqual(self.run_command('pwd'), '/')
        self.run_command('cd')
        self.assertEqual(self.run_command('pwd'), '/root')

    def test_cd_dash(self):
        self.assertEqual(self.run_command('cd -'), '-bash: cd: OLDPWD not set')
        self.run_command('cd /tmp')
        self.run_command('cd /etc')
        self.assertEqual(self.run_command('cd -'), '/tmp')
        self.assertEqual(self.run_command('cd -'), '/etc')

    def test_cd_errors(self):
        self.run_command('touch /tmp/f')
        self.assertEqual(self.run_command('cd /nope'),
                         '-bash: cd: /nope: No such file or directory')
        self.assertEqual(self.run_command('cd /tmp/f'), '-bash: cd: /tmp/f: Not a directory')
        self.assertEqual(self.run_command('cd a b'), '-bash: cd: too many arguments')
        self.assertEqual(self.run_command('pwd'), '/root')

    def test_cd_permission(self):
        self.run_command('useradd alice')
        self.run_command('su alice')
        self.assertEqual(self.run_command('cd /root'), '-bash: cd: /root: Permission denied')

    def test_exit_ends_session(self):
        self.assertIsNone(self.session.execute_command('exit'))

    def test_help(self):
        output = self.run_command('help')
        self.assertIn('cd', output)
        self.assertIn('usermod', output)
        self.assertEqual(self.run_command('help nosuch'),
                         '-bash: help: nosuch: command not found')

    def test_command_help(self):
        output = self.run_command('ls --help')
        self.assertTrue(output.startswith('List directory contents.'))
        self.assertIn('Usage:', output)
        self.assertIn('Examples:', output)

    def test_usage_error_hint(self):
        self.assertEqual(self.run_command('ls -z'),
                         "ls: invalid option -- 'z'\nTry 'ls --help' for more information.")
        self.assertEqual(self.session.shell.last_exit_code, 2)


class TestCommandHistory(unittest.TestCase):
    """Test command history and the history builtin."""

    def test_recording(self):
        history = CommandHistory(max_size=3)
        for command in ('one', 'two', '  ', 'two', ' three ', 'four'):
            history.add(command)
        self.assertEqual(history.entries, ['two', 'three', 'four'])
        self.assertEqual(history.numbered(), [(2, 'two'), (3, 'three'), (4, 'four')])
        self.assertEqual(history.numbered(1), [(4, 'four')])
        self.assertEqual(history.numbered(0), [])
        history.clear()
        self.assertEqual(history.numbered(), [])

    def test_builtin(self):
        session = new_session()
        session.run_command('echo one')
        session.run_command('echo two')
        self.assertEqual(session.run_command('history'),
                         '    1  echo one\n    2  echo two\n    3  history')
        self.assertEqual(session.run_command('history 2'),
                         '    3  history\n    4  history 2')
        self.assertEqual(session.run_command('history x'),
                         '-bash: history: x: numeric argument required')
        self.assertEqual(session.shell.last_exit_code, 1)
        session.run_command('history -c')
        self.assertEqual(session.run_command('history'), '    1  history')

    def test_password_lines_not_recorded(self):
        session = new_session()
        session.run_command('useradd alice')
        session.run_command('passwd alice')
        session.run_command('secret1')
        session.run_command('secret1')
        self.assertEqual(session.history.entries, ['useradd alice', 'passwd alice'])

    def test_history_survives_state_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'state.json')
            session = new_session(state_file=path)
            session.run_command('echo saved')
            restored = new_session()
            restored.load_state(path)
            self.assertEqual(restored.run_command('history'),
                             '    1  echo saved\n    2  history')


class TestTerminalSession(unittest.TestCase):
    """Test the terminal session."""

    def test_prompt(self):
        session = new_session()
        self.assertEqual(session.get_prompt(), 'root@debian:~# ')
        session.run_command('cd /tmp')
        self.assertEqual(session.get_prompt(), 'root@debian:/tmp# ')

    def test_colored_prompt(self):
        session = TerminalSession(TerminalConfig())
        self.assertIn('\033[32m', session.get_prompt())

    def test_initial_directory_and_user(self):
        session = TerminalSession(TerminalConfig(enable_colors=False, initial_dir='/etc',
                                                 hostname='box'))
        self.assertEqual(session.run_command('pwd'), '/etc')
        self.assertEqual(session.get_prompt(), 'root@box:/etc# ')

    def test_run_script(self):
        session = new_session()
        outputs = session.run_script(['# comment', 'echo one', '', 'echo two', 'exit',
                                      'echo never'])
        self.assertEqual(outputs, ['one', 'two'])

    def test_state_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'state.json')
            session = new_session(state_file=path)
            session.run_command('useradd alice')
            session.run_command('echo note > /tmp/note')
            session.run_command('export EDITOR=vim')
            session.run_command('cd /tmp')
            with open(path) as f:
                self.assertIn('filesystem', json.load(f))

            restored = new_session()
            restored.load_state(path)
            self.assertEqual(restored.run_command('cat /tmp/note'), 'note')
            self.assertEqual(restored.run_command('id -un alice'), 'alice')
            self.assertEqual(restored.run_command('echo $EDITOR'), 'vim')
            self.assertEqual(restored.run_command('pwd'), '/tmp')

    def test_interactive_loop(self):
        session = new_session()
        with patch('builtins.input', side_effect=['echo hi', 'exit']), \
                patch('sys.stdout', new_callable=io.StringIO) as stdout:
            session.run_interactive()
        self.assertIn('hi\n', stdout.getvalue())
        self.assertTrue(stdout.getvalue().endswith('logout\n'))
        self.assertEqual(session.history.entries, ['echo hi', 'exit'])

    def test_interactive_password_change(self):
        session = new_session()
        session.run_command('useradd alice')
        with patch('builtins.input', side_effect=['passwd alice', 'exit']), \
                patch('getpass.getpass', side_effect=['secret1', 'secret1']), \
                patch('sys.stdout', new_callable=io.StringIO) as stdout:
            session.run_interactive()
        self.assertIn('passwd: password updated successfully', stdout.getvalue())
        self.assertTrue(session.shell.identity.verify_password('alice', 'secret1'))
        self.assertNotIn('secret1', session.history.entries)

    def test_interrupt_cancels_password_change(self):
        session = new_session()
        session.run_command('useradd alice')
        with patch('builtins.input', side_effect=['passwd alice', 'exit']), \
                patch('getpass.getpass', side_effect=KeyboardInterrupt), \
                patch('sys.stdout', new_callable=io.StringIO) as stdout:
            session.run_interactive()
        self.assertIn('passwd: password unchanged', stdout.getvalue())
        self.assertIsNone(session.pending)

    def test_eof_ends_loop(self):
        session = new_session()
        with patch('builtins.input', side_effect=EOFError), \
                patch('sys.stdout', new_callable=io.StringIO) as stdout:
            session.run_interactive()
        self.assertIn('logout', stdout.getvalue())


class TestMain(unittest.TestCase):
    """Test the command line entry point."""

    def test_single_command(self):
        argv = ['debshell', '--no-color', '-c', 'echo hi']
        with patch.object(sys, 'argv', argv), \
                patch('sys.stdout', new_callable=io.StringIO) as stdout:
            with self.assertRaises(SystemExit) as cm:
                main()
        self.assertEqual(cm.exception.code, 0)
        self.assertEqual(stdout.getvalue(), 'hi\n')

    def test_exit_code_propagates(self):
        argv = ['debshell', '-c', 'ls /nope']
        with patch.object(sys, 'argv', argv), \
                patch('sys.stdout', new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as cm:
                main()
        self.assertEqual(cm.exception.code, 2)

    def test_unknown_user(self):
        argv = ['debshell', '-u', 'ghost', '-c', 'whoami']
        with patch.object(sys, 'argv', argv), \
                patch('sys.stderr', new_callable=io.StringIO) as stderr:
            with self.assertRaises(SystemExit) as cm:
                main()
        self.assertEqual(cm.exception.code, 1)
        self.assertIn('ghost', stderr.getvalue())


if __name__ == '__main__':
    unittest.main()
