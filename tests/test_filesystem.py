#!/usr/bin/env python3
"""
Tests for the path-keyed virtual filesystem.

Covers path resolution, creation, removal and the subtree moves that
rewrite every key below a directory.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from debshell.errors import (
    NotFound, NotADirectory, IsADirectory, FileExists, InvalidMove,
    OperationNotPermitted,
)
from debshell.filesystem import (
    FileSystem, normalize_path, resolve_path, parent_path, basename,
    join_path, is_within,
)


@pytest.fixture
def fs():
    return FileSystem()


class TestPaths:

    def test_normalize(self):
        assert normalize_path('//a/./b/../c/') == '/a/c'
        assert normalize_path('/..') == '/'
        assert normalize_path('') == '/'

    def test_resolve_relative(self):
        assert resolve_path('b/c', '/a') == '/a/b/c'
        assert resolve_path('..', '/a/b') == '/a'
        assert resolve_path('/x/../y', '/a') == '/y'

    def test_resolve_home_and_previous(self):
        assert resolve_path('~', '/tmp', home='/home/alice') == '/home/alice'
        assert resolve_path('~/notes', '/tmp', home='/home/alice') == '/home/alice/notes'
        assert resolve_path('-', '/tmp', previous='/etc') == '/etc'
        assert resolve_path('-', '/tmp') == '/tmp'

    def test_helpers(self):
        assert parent_path('/a/b') == '/a'
        assert parent_path('/a') == '/'
        assert parent_path('/') == '/'
        assert basename('/a/b.txt') == 'b.txt'
        assert join_path('/', 'etc') == '/etc'
        assert join_path('/etc', 'passwd') == '/etc/passwd'
        assert is_within('/a/b', '/a')
        assert is_within('/a', '/a')
        assert not is_within('/ab', '/a')


class TestBaseSystem:

    def test_base_directories(self, fs):
        for path in ('/bin', '/etc', '/home', '/root', '/tmp', '/usr/bin', '/var'):
            assert fs.is_dir(path)
        assert fs.get('/root').permissions == 'drwx------'
        assert fs.get('/tmp').permissions == 'drwxrwxrwx'

    def test_empty_filesystem(self):
        fs = FileSystem(populate=False)
        assert fs.children('/') == []


class TestCreation:

    def test_create_and_read(self, fs):
        entry = fs.create_file('/tmp/a.txt', 'hello', owner='alice', group='alice')
        assert entry.size == 5
        assert entry.permissions == '-rw-r--r--'
        assert fs.read_file('/tmp/a.txt') == 'hello'

    def test_create_existing(self, fs):
        fs.create_file('/tmp/a.txt')
        with pytest.raises(FileExists):
            fs.create_file('/tmp/a.txt')

    def test_create_without_parent(self, fs):
        with pytest.raises(NotFound):
            fs.create_file('/nope/a.txt')

    def test_create_under_file(self, fs):
        fs.create_file('/tmp/f')
        with pytest.raises(NotADirectory):
            fs.create_file('/tmp/f/g')

    def test_write_and_append(self, fs):
        fs.write_file('/tmp/log', 'one\n')
        fs.write_file('/tmp/log', 'two\n', append=True)
        assert fs.read_file('/tmp/log') == 'one\ntwo\n'
        fs.write_file('/tmp/log', 'reset\n')
        assert fs.get('/tmp/log').size == 6

    def test_write_to_directory(self, fs):
        with pytest.raises(IsADirectory):
            fs.write_file('/tmp', 'x')

    def test_read_directory(self, fs):
        with pytest.raises(IsADirectory):
            fs.read_file('/etc')

    def test_mkdir_parents(self, fs):
        created = fs.mkdir('/tmp/a/b/c', parents=True)
        assert created == ['/tmp/a', '/tmp/a/b', '/tmp/a/b/c']
        assert fs.mkdir('/tmp/a/b', parents=True) == []

    def test_mkdir_existing(self, fs):
        with pytest.raises(FileExists):
            fs.mkdir('/tmp')

    def test_mkdir_parents_through_file(self, fs):
        fs.create_file('/tmp/f')
        with pytest.raises(NotADirectory):
            fs.mkdir('/tmp/f/x', parents=True)

    def test_children_sorted(self, fs):
        for name in ('b', 'a', 'c'):
            fs.create_file(f'/tmp/{name}')
        assert fs.children('/tmp') == ['a', 'b', 'c']
        with pytest.raises(NotADirectory):
            fs.children('/tmp/a')

    def test_touch_reference(self, fs):
        ref = fs.create_file('/tmp/ref')
        ref.modified = 1000.0
        ref.accessed = 2000.0
        fs.create_file('/tmp/f')
        fs.touch('/tmp/f', reference=ref)
        assert fs.get('/tmp/f').modified == 1000.0
        assert fs.get('/tmp/f').accessed == 2000.0


class TestRemoval:

    def test_remove_file(self, fs):
        fs.create_file('/tmp/f')
        assert fs.remove('/tmp/f') == ['/tmp/f']
        assert not fs.exists('/tmp/f')

    def test_remove_directory_needs_recursive(self, fs):
        fs.mkdir('/tmp/d')
        with pytest.raises(IsADirectory):
            fs.remove('/tmp/d')

    def test_remove_subtree(self, fs):
        fs.mkdir('/tmp/d/e', parents=True)
        fs.create_file('/tmp/d/e/f')
        fs.create_file('/tmp/dx')
        removed = fs.remove('/tmp/d', recursive=True)
        assert removed == ['/tmp/d', '/tmp/d/e', '/tmp/d/e/f']
        assert fs.exists('/tmp/dx')

    def test_remove_root(self, fs):
        with pytest.raises(OperationNotPermitted):
            fs.remove('/', recursive=True)

    def test_remove_missing(self, fs):
        with pytest.raises(NotFound):
            fs.remove('/tmp/missing')


class TestMove:

    def test_rename_file(self, fs):
        fs.create_file('/tmp/a', 'data')
        fs.move('/tmp/a', '/tmp/b')
        assert not fs.exists('/tmp/a')
        assert fs.read_file('/tmp/b') == 'data'

    def test_move_carries_subtree(self, fs):
        fs.mkdir('/tmp/a/b', parents=True)
        fs.create_file('/tmp/a/b/c', 'deep')
        moved = fs.move('/tmp/a', '/var/z')
        assert moved == ['/var/z', '/var/z/b', '/var/z/b/c']
        assert fs.read_file('/var/z/b/c') == 'deep'
        assert fs.descendants('/tmp') == []

    def test_move_replaces_file(self, fs):
        fs.create_file('/tmp/a', 'new')
        fs.create_file('/tmp/b', 'old')
        fs.move('/tmp/a', '/tmp/b')
        assert fs.read_file('/tmp/b') == 'new'

    def test_move_into_itself(self, fs):
        fs.mkdir('/tmp/a')
        with pytest.raises(InvalidMove):
            fs.move('/tmp/a', '/tmp/a/b')
        with pytest.raises(InvalidMove):
            fs.move('/tmp/a', '/tmp/a')

    def test_move_file_over_directory(self, fs):
        fs.create_file('/tmp/f')
        fs.mkdir('/tmp/d')
        with pytest.raises(IsADirectory):
            fs.move('/tmp/f', '/tmp/d')

    def test_move_directory_over_file(self, fs):
        fs.create_file('/tmp/f')
        fs.mkdir('/tmp/d')
        with pytest.raises(NotADirectory):
            fs.move('/tmp/d', '/tmp/f')

    def test_move_over_non_empty_directory(self, fs):
        fs.mkdir('/tmp/a')
        fs.mkdir('/tmp/b')
        fs.create_file('/tmp/b/x')
        with pytest.raises(FileExists) as exc:
            fs.move('/tmp/a', '/tmp/b')
        assert exc.value.reason == 'Directory not empty'

    def test_move_over_empty_directory(self, fs):
        fs.mkdir('/tmp/a')
        fs.create_file('/tmp/a/x')
        fs.mkdir('/tmp/b')
        fs.move('/tmp/a', '/tmp/b')
        assert fs.exists('/tmp/b/x')

    def test_move_to_missing_parent(self, fs):
        fs.create_file('/tmp/a')
        with pytest.raises(NotFound):
            fs.move('/tmp/a', '/nope/a')
        assert fs.exists('/tmp/a')


class TestOwnershipAndSerialization:

    def test_chown_all(self, fs):
        fs.create_file('/tmp/a', owner='alice')
        fs.create_file('/tmp/b', owner='alice')
        fs.create_file('/tmp/c', owner='bob')
        assert fs.chown_all('alice', 'alicia') == 2
        assert fs.get('/tmp/a').owner == 'alicia'
        assert fs.get('/tmp/c').owner == 'bob'

    def test_snapshot_restore(self, fs):
        fs.create_file('/tmp/a', 'before')
        backup = fs.snapshot(['/tmp/a', '/tmp/new'])
        fs.write_file('/tmp/a', 'after')
        fs.create_file('/tmp/new')
        fs.restore(backup)
        assert fs.read_file('/tmp/a') == 'before'
        assert not fs.exists('/tmp/new')

    def test_round_trip(self, fs):
        fs.mkdir('/tmp/d')
        fs.create_file('/tmp/d/f', 'content', owner='alice')
        restored = FileSystem.from_dict(fs.to_dict())
        assert restored.entries == fs.entries
