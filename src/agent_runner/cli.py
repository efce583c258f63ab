from __future__ import annotations

import argparse
import json
import sys

import httpx

from agent_runner.domain.models import DEFAULT_QUEUE_CLASS

# Iteration loops can run for a long time; the client waits for them.
_SYNC_TIMEOUT_SECONDS = 3600


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='agent-runner', description='Drive coding-agent executions over the runner API')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Runner API base URL')

    sub = parser.add_subparsers(dest='command', required=True)

    for name, help_text in (
        ('execute', 'Run the agent once'),
        ('iterate', 'Run the agent until the reviewer accepts the result'),
    ):
        run = sub.add_parser(name, help=help_text)
        run.add_argument('--prompt', required=True, help='Prompt sent to the agent')
        run.add_argument('--workspace', default='', help='Workspace path relative to the repositories root')
        run.add_argument('--conversation', default='', help='Explicit conversation id')
        run.add_argument('--queue', default=DEFAULT_QUEUE_CLASS, help='Queue class used to pick the current conversation')
        run.add_argument('--callback-url', default='', help='Deliver the result to this URL and return immediately')
        if name == 'iterate':
            run.add_argument('--max-iterations', type=int, default=0, help='Maximum agent invocations (server default when 0)')

    new_conversation = sub.add_parser('new-conversation', help='Start a fresh conversation for a queue class')
    new_conversation.add_argument('--queue', default=DEFAULT_QUEUE_CLASS, help='Queue class')

    conversations = sub.add_parser('conversations', help='List stored conversations')
    conversations.add_argument('--limit', type=int, default=100)

    conversation = sub.add_parser('conversation', help='Show one conversation')
    conversation.add_argument('conversation_id')

    sub.add_parser('queue-status', help='Show agent slot usage')

    serve = sub.add_parser('serve', help='Run the API server')
    serve.add_argument('--host', default='127.0.0.1')
    serve.add_argument('--port', type=int, default=8000)

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _run_payload(args: argparse.Namespace) -> dict:
    payload: dict = {
        'prompt': args.prompt,
        'workspace': args.workspace,
        'queue_class': args.queue,
    }
    if args.conversation.strip():
        payload['conversation_id'] = args.conversation.strip()
    if args.callback_url.strip():
        payload['callback_url'] = args.callback_url.strip()
    max_iterations = int(getattr(args, 'max_iterations', 0) or 0)
    if max_iterations > 0:
        payload['max_iterations'] = max_iterations
    return payload


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run('agent_runner.main:app', host=args.host, port=int(args.port))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == 'serve':
        return _serve(args)
    base = args.api_base.rstrip('/')

    with httpx.Client(timeout=_SYNC_TIMEOUT_SECONDS) as client:
        if args.command in {'execute', 'iterate'}:
            path = f'/agent/{args.command}'
            if args.callback_url.strip():
                path = f'{path}/async'
            response = client.post(f'{base}{path}', json=_run_payload(args))
        elif args.command == 'new-conversation':
            response = client.post(f'{base}/agent/conversation/new', json={'queue_class': args.queue})
        elif args.command == 'conversations':
            response = client.get(f'{base}/api/conversations', params={'limit': int(args.limit)})
        elif args.command == 'conversation':
            response = client.get(f'{base}/api/conversations/{args.conversation_id}')
        elif args.command == 'queue-status':
            response = client.get(f'{base}/api/queue-status')
        else:
            parser.error(f'unknown command: {args.command}')
            return 2

    # 422 still carries the full result of a run that did not succeed.
    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
