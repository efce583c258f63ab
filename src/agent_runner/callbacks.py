from __future__ import annotations

from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

import httpx

from agent_runner.domain.errors import CallbackDeliveryError
from agent_runner.observability import get_logger, mask_secrets

_log = get_logger('agent_runner.callbacks')

USER_AGENT = 'agent-runner/1.0'
SECRET_HEADER = 'X-Webhook-Secret'
COMPAT_SECRET_HEADER = 'X-Runner-Secret'
CALLBACK_PATH = '/agent/callback'


def split_secret(url: str) -> tuple[str, str | None]:
    """Return the URL without its ``secret`` query parameter, plus that secret."""
    parts = urlsplit(str(url or '').strip())
    secret: str | None = None
    kept: list[tuple[str, str]] = []
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key == 'secret':
            secret = secret or (value.strip() or None)
            continue
        kept.append((key, value))
    cleaned = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))
    return cleaned, secret


def build_callback_url(base_url: str, secret: str | None = None) -> str:
    base = str(base_url or '').strip().rstrip('/')
    if not base:
        raise ValueError('callback base url is required')
    url = f'{base}{CALLBACK_PATH}'
    if secret:
        url = f'{url}?secret={quote(secret, safe="")}'
    return url


class CallbackDelivery:
    """Best-effort, single-attempt webhook delivery."""

    def __init__(
        self,
        *,
        webhook_secret: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.webhook_secret = str(webhook_secret or '').strip() or None
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self._transport = transport

    def deliver(self, url: str, payload: dict) -> bool:
        masked = mask_secrets(url)
        try:
            status_code = self._post(url, payload)
        except CallbackDeliveryError as exc:
            _log.warning('callback_failed url=%s status=%s error=%s', masked, exc.status_code, exc.message)
            return False
        _log.info('callback_delivered url=%s status=%s', masked, status_code)
        return True

    def _post(self, url: str, payload: dict) -> int:
        try:
            target, url_secret = split_secret(url)
            parts = urlsplit(target)
        except ValueError as exc:
            raise CallbackDeliveryError(f'callback url is malformed: {exc}') from exc
        if not target:
            raise CallbackDeliveryError('callback url is empty')
        if parts.scheme not in {'http', 'https'} or not parts.netloc:
            raise CallbackDeliveryError(f'callback url must be absolute http(s): {mask_secrets(target)}')
        secret = url_secret or self.webhook_secret
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': USER_AGENT,
        }
        if secret:
            headers[SECRET_HEADER] = secret
            headers[COMPAT_SECRET_HEADER] = secret
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.post(target, json=payload, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise CallbackDeliveryError(f'callback request failed: {exc}') from exc
        except (TypeError, ValueError) as exc:
            raise CallbackDeliveryError(f'callback payload not serializable: {exc}') from exc
        if not response.is_success:
            raise CallbackDeliveryError(
                f'callback rejected status={response.status_code}',
                status_code=response.status_code,
            )
        return response.status_code


__all__ = ['CallbackDelivery', 'build_callback_url', 'split_secret']
