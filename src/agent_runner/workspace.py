from __future__ import annotations

import json
from pathlib import Path

from agent_runner.domain.errors import WorkspaceError
from agent_runner.observability import get_logger

_log = get_logger('agent_runner.workspace')

_TRUST_SETTINGS = {
    'security.workspace.trust.enabled': True,
    'security.workspace.trust.startupPrompt': 'never',
    'security.workspace.trust.untrustedFiles': 'open',
    'security.workspace.trust.banner': 'never',
    'security.workspace.trust.emptyWindow': True,
}
_REQUIRED_PERMISSIONS = (
    'Shell(git)',
    'Shell(bash)',
    'Shell(sh)',
    'Shell(chmod)',
    'Shell(echo)',
    'Shell(rm)',
    'Shell(rmdir)',
    'Shell(mv)',
    'Shell(cp)',
    'FileSystem(delete)',
    'FileSystem(write)',
    'FileSystem(read)',
)


def _read_json_object(path: Path) -> dict:
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, ValueError):
        _log.warning('ignoring unreadable settings file path=%s', path)
        return {}
    return data if isinstance(data, dict) else {}


def _write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + '\n', encoding='utf-8')


class WorkspaceGuard:
    """Resolves workspace references under a single repositories root."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve(strict=False)

    def resolve(self, workspace_ref: str | None) -> Path:
        ref = str(workspace_ref or '').strip()
        candidate = (self.root / ref).resolve(strict=False) if ref else self.root
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise WorkspaceError(
                f'workspace must stay inside {self.root}: {ref}',
                code='workspace_outside_root',
                path=str(candidate),
            ) from exc
        if not candidate.is_dir():
            raise WorkspaceError(
                f'workspace not found: {ref or candidate}',
                code='workspace_not_found',
                path=str(candidate),
            )
        return candidate

    def ensure_trusted(self, workspace: Path) -> None:
        """Write the editor trust settings and CLI permissions the agent needs."""
        try:
            self._ensure_trust_settings(workspace)
            self._ensure_cli_permissions(workspace)
        except OSError as exc:
            raise WorkspaceError(
                f'workspace could not be trusted: {exc}',
                code='workspace_untrusted',
                path=str(workspace),
            ) from exc

    def prepare(self, workspace_ref: str | None) -> Path:
        workspace = self.resolve(workspace_ref)
        self.ensure_trusted(workspace)
        return workspace

    @staticmethod
    def _ensure_trust_settings(workspace: Path) -> None:
        settings_path = workspace / '.vscode' / 'settings.json'
        settings = _read_json_object(settings_path)
        if all(settings.get(key) == value for key, value in _TRUST_SETTINGS.items()):
            return
        settings.update(_TRUST_SETTINGS)
        _write_json(settings_path, settings)
        _log.info('workspace_trust_configured path=%s', settings_path)

    @staticmethod
    def _ensure_cli_permissions(workspace: Path) -> None:
        config_path = workspace / '.cursor' / 'cli.json'
        config = _read_json_object(config_path)
        permissions = config.get('permissions')
        if not isinstance(permissions, dict):
            permissions = {}
        allow = [str(item) for item in permissions.get('allow') or []]
        deny = permissions.get('deny')
        changed = not config_path.is_file() or not isinstance(deny, list)
        for permission in _REQUIRED_PERMISSIONS:
            if permission not in allow:
                allow.append(permission)
                changed = True
        if not changed:
            return
        config['permissions'] = {
            'allow': allow,
            'deny': deny if isinstance(deny, list) else [],
        }
        _write_json(config_path, config)
        _log.info('workspace_cli_permissions_configured path=%s', config_path)


__all__ = ['WorkspaceGuard']
