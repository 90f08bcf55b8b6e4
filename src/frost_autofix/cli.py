from __future__ import annotations

import argparse
import json
import logging
import sys

import httpx

from frost_autofix.bootstrap import build_consumer, build_runtime
from frost_autofix.config import load_settings
from frost_autofix.consumer import ConsumerResult
from frost_autofix.domain.errors import StorageFault
from frost_autofix.domain.events import EventType
from frost_autofix.domain.models import Region
from frost_autofix.observability import configure_observability

_log = logging.getLogger(__name__)

LOCAL_COMMANDS = frozenset({'consume', 'recover', 'queue', 'set-plan'})
PLAN_CHOICES = ('free', 'pro')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='frost-autofix', description='Operate the autofix queue and ledger')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Autofix API base URL')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('consume', help='Run one consumer pass: claim, execute and resolve at most one task')
    sub.add_parser('recover', help='Return every in-flight task to the queue')

    queue = sub.add_parser('queue', help='Show mailbox region counts')
    queue.add_argument(
        '--region',
        choices=[region.value for region in Region],
        default=None,
        help='Also list task names in this region',
    )

    set_plan = sub.add_parser('set-plan', help='Change an installation plan and monthly PR limit')
    set_plan.add_argument('installation_id', type=int)
    set_plan.add_argument('--plan', required=True, choices=list(PLAN_CHOICES))
    set_plan.add_argument('--pr-limit', type=int, required=True, help='Monthly PR limit; -1 means unlimited')

    sub.add_parser('stats', help='Show aggregate run statistics')
    usage = sub.add_parser('usage', help='Show usage for one installation')
    usage.add_argument('installation_id', type=int)
    sub.add_parser('health', help='Check API health')
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _consumer_payload(result: ConsumerResult) -> dict:
    payload: dict = {'state': result.state.value}
    if result.task is not None:
        payload['task'] = result.task.to_record()
    if result.agent is not None:
        payload['agent'] = {
            'ok': result.agent.ok,
            'returncode': result.agent.returncode,
            'pr_number': result.agent.pr_number,
            'reason': result.agent.reason,
        }
    if result.callback is not None:
        payload['callback'] = {
            'ok': result.callback.ok,
            'status_code': result.callback.status_code,
            'detail': result.callback.detail,
        }
    return payload


def _run_local(args, parser: argparse.ArgumentParser) -> int:
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )

    if args.command == 'set-plan':
        if args.pr_limit < -1:
            parser.error('--pr-limit must be -1 or greater')
            return 2
        runtime = build_runtime(settings, fallback_to_memory=False)
        try:
            tenant = runtime.ledger.set_plan(args.installation_id, plan=args.plan, pr_limit=args.pr_limit)
        except KeyError:
            print(f'installation not found: {args.installation_id}', file=sys.stderr)
            return 1
        _print_json(tenant)
        return 0

    runtime = build_runtime(settings)
    if args.command == 'consume':
        consumer = build_consumer(runtime)
        try:
            result = consumer.run_once()
        except StorageFault as exc:
            _log.exception('consumer pass aborted by storage fault')
            print(f'storage fault: {exc.message}', file=sys.stderr)
            return 1
        _print_json(_consumer_payload(result))
        return 0

    if args.command == 'recover':
        try:
            recovered = runtime.mailbox.recover_in_flight()
        except StorageFault as exc:
            _log.exception('recover aborted by storage fault')
            print(f'storage fault: {exc.message}', file=sys.stderr)
            return 1
        for task in recovered:
            runtime.event_log.append(EventType.TASK_RECOVERED, task=task)
        _print_json({'recovered': [task.name for task in recovered]})
        return 0

    payload: dict = {'counts': runtime.mailbox.counts()}
    if args.region:
        payload['tasks'] = runtime.mailbox.list_region(Region(args.region))
    _print_json(payload)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command in LOCAL_COMMANDS:
        return _run_local(args, parser)

    base = args.api_base.rstrip('/')
    with httpx.Client(timeout=60) as client:
        if args.command == 'stats':
            response = client.get(f'{base}/api/stats')
        elif args.command == 'usage':
            response = client.get(f'{base}/api/usage/{int(args.installation_id)}')
        elif args.command == 'health':
            response = client.get(f'{base}/health')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
