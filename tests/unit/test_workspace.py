from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from agent_runner.domain.errors import WorkspaceError
from agent_runner.workspace import WorkspaceGuard


def test_resolve_inside_root(tmp_path: Path):
    (tmp_path / 'repo-a').mkdir()
    guard = WorkspaceGuard(tmp_path)
    assert guard.resolve('repo-a') == (tmp_path / 'repo-a').resolve()
    assert guard.resolve('') == tmp_path.resolve()
    assert guard.resolve(None) == tmp_path.resolve()


def test_resolve_rejects_escape(tmp_path: Path):
    root = tmp_path / 'root'
    root.mkdir()
    (tmp_path / 'sibling').mkdir()
    guard = WorkspaceGuard(root)
    with pytest.raises(WorkspaceError) as excinfo:
        guard.resolve('../sibling')
    assert excinfo.value.code == 'workspace_outside_root'


def test_resolve_rejects_missing_directory(tmp_path: Path):
    (tmp_path / 'a-file').write_text('x', encoding='utf-8')
    guard = WorkspaceGuard(tmp_path)
    for ref in ('missing', 'a-file'):
        with pytest.raises(WorkspaceError) as excinfo:
            guard.resolve(ref)
        assert excinfo.value.code == 'workspace_not_found'


def test_prepare_writes_trust_settings_and_permissions(tmp_path: Path):
    (tmp_path / 'repo-a').mkdir()
    guard = WorkspaceGuard(tmp_path)

    workspace = guard.prepare('repo-a')

    settings = json.loads((workspace / '.vscode' / 'settings.json').read_text(encoding='utf-8'))
    assert settings['security.workspace.trust.enabled'] is True
    assert settings['security.workspace.trust.startupPrompt'] == 'never'
    cli = json.loads((workspace / '.cursor' / 'cli.json').read_text(encoding='utf-8'))
    assert 'Shell(git)' in cli['permissions']['allow']
    assert cli['permissions']['deny'] == []


def test_prepare_keeps_existing_settings(tmp_path: Path):
    repo = tmp_path / 'repo-a'
    (repo / '.vscode').mkdir(parents=True)
    (repo / '.vscode' / 'settings.json').write_text(json.dumps({'editor.tabSize': 2}), encoding='utf-8')
    (repo / '.cursor').mkdir()
    (repo / '.cursor' / 'cli.json').write_text(
        json.dumps({'permissions': {'allow': ['Shell(make)'], 'deny': ['Shell(sudo)']}}),
        encoding='utf-8',
    )

    WorkspaceGuard(tmp_path).prepare('repo-a')

    settings = json.loads((repo / '.vscode' / 'settings.json').read_text(encoding='utf-8'))
    assert settings['editor.tabSize'] == 2
    assert settings['security.workspace.trust.enabled'] is True
    cli = json.loads((repo / '.cursor' / 'cli.json').read_text(encoding='utf-8'))
    assert cli['permissions']['allow'][0] == 'Shell(make)'
    assert 'FileSystem(write)' in cli['permissions']['allow']
    assert cli['permissions']['deny'] == ['Shell(sudo)']


def test_prepare_is_stable_on_second_run(tmp_path: Path):
    (tmp_path / 'repo-a').mkdir()
    guard = WorkspaceGuard(tmp_path)
    workspace = guard.prepare('repo-a')
    cli_path = workspace / '.cursor' / 'cli.json'
    before = cli_path.read_text(encoding='utf-8')

    guard.prepare('repo-a')

    assert cli_path.read_text(encoding='utf-8') == before


@pytest.mark.skipif(os.name != 'posix' or os.geteuid() == 0, reason='needs a non-root posix user')
def test_unwritable_workspace_is_untrusted(tmp_path: Path):
    repo = tmp_path / 'repo-a'
    repo.mkdir()
    repo.chmod(0o500)
    try:
        with pytest.raises(WorkspaceError) as excinfo:
            WorkspaceGuard(tmp_path).prepare('repo-a')
        assert excinfo.value.code == 'workspace_untrusted'
    finally:
        repo.chmod(0o700)
