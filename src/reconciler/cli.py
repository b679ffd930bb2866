"""CLI handlers for stack and state verbs.

Usage:
    stackctl stack plan [-f stack.yaml] [--var k=v] [--out plan.json] [--destroy]
    stackctl stack apply [PLAN_FILE] [--yes] [--dry-run] [--parallelism N]
    stackctl stack destroy [--yes] [--dry-run]
    stackctl stack validate [-f stack.yaml]
    stackctl stack output [NAME] [--json-output]
    stackctl state list|show|rm|taint|unlock ...
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

from common import SENSITIVE_PLACEHOLDER, redact
from config import ConfigError, Settings, env_variables, load_settings, load_var_file, parse_var_flag
from expressions import is_unknown
from reconciler.differ import CREATE, DELETE, NOOP, REPLACE, UPDATE, Differ, Plan, PlanError
from reconciler.executor import Executor
from reconciler.graph import ResourceGraph
from reconciler.providers import ProviderError, ProviderRegistry, default_registry
from reconciler.state import StateError, StateSnapshot, StateStore, create_state_store
from stack import Stack, load_stack, resolve_variables

logger = logging.getLogger(__name__)

# Exceptions reported as "Error: ..." with exit code 1
DOMAIN_ERRORS = (ConfigError, PlanError, StateError, ProviderError)

_SYMBOLS = {CREATE: '+', UPDATE: '~', REPLACE: '-/+', DELETE: '-', NOOP: ' '}


def _common_parser(verb: str, noun: str = 'stack') -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stackctl {noun} {verb}',
        description=f'{verb.capitalize()} a stack',
    )
    parser.add_argument(
        '--file', '-f',
        help='Stack file or directory (default: ./stack.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    parser.add_argument(
        '--lock-timeout',
        type=float,
        help='Seconds to keep retrying a held state lock',
    )
    return parser


def _add_variable_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--var',
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Set a stack variable (can be repeated)',
    )
    parser.add_argument(
        '--var-file',
        action='append',
        default=[],
        help='Load variable values from a YAML file (can be repeated)',
    )


def _add_plan_options(parser: argparse.ArgumentParser) -> None:
    _add_variable_options(parser)
    parser.add_argument(
        '--parallelism',
        type=int,
        help='Maximum concurrent provider operations',
    )
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help='Skip reading live resource state before planning',
    )
    parser.add_argument(
        '--replace',
        action='append',
        default=[],
        metavar='ADDRESS',
        help='Force replacement of a resource instance (can be repeated)',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _emit_json(verb: str, success: bool, payload: dict, duration: Optional[float] = None) -> None:
    """Emit structured JSON output."""
    output = {'verb': verb, 'success': success}
    if duration is not None:
        output['duration_seconds'] = round(duration, 2)
    output.update(payload)
    print(json.dumps(output, indent=2, default=str))


def _error(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return 1


def _confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N] ").strip().lower()
    return response == 'y'


class Workspace:
    """A loaded stack with everything needed to plan and apply it.

    Attributes:
        stack: Root stack with modules loaded
        settings: Defaults < settings file < environment < stack settings < flags
        store: State store for the stack's backend
    """

    def __init__(self, args, needs_variables: bool = True, variables: Optional[dict] = None):
        self.stack: Stack = load_stack(args.file)
        base_dir = self.stack.source_path.parent if self.stack.source_path else Path.cwd()
        self.settings = self._settings(args)
        self.store: StateStore = create_state_store(
            self.stack.backend, self.stack.name, base_dir, self.settings,
        )
        self.variables: dict = {}
        self._graph: Optional[ResourceGraph] = None
        self._registry: Optional[ProviderRegistry] = None
        if variables is not None:
            self.variables = resolve_variables(self.stack, flags=variables)
        elif needs_variables:
            self.variables = self._variables(args)

    def _settings(self, args) -> Settings:
        settings = load_settings().merge(self.stack.settings)
        no_refresh = getattr(args, 'no_refresh', False)
        return settings.merge({
            'parallelism': getattr(args, 'parallelism', None),
            'refresh': False if no_refresh else None,
            'lock_timeout': args.lock_timeout,
        })

    def _variables(self, args) -> dict:
        files = [load_var_file(Path(p)) for p in getattr(args, 'var_file', [])]
        flags = dict(parse_var_flag(v) for v in getattr(args, 'var', []))
        return resolve_variables(self.stack, env=env_variables(), files=files, flags=flags)

    @property
    def graph(self) -> ResourceGraph:
        if self._graph is None:
            self._graph = ResourceGraph(self.stack, self.variables)
        return self._graph

    @property
    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            self._registry = default_registry()
            self._registry.configure(self.graph.evaluate_providers())
        return self._registry

    def differ(self) -> Differ:
        return Differ(self.graph, self.registry)

    def locked(self, operation: str):
        return self.store.locked(operation, timeout=self.settings.lock_timeout)

    def plan(self, snapshot: StateSnapshot, destroy: bool = False,
             replace: tuple = ()) -> tuple[Plan, StateSnapshot]:
        """Refresh (per settings) then plan; returns the plan and the snapshot it was made on."""
        differ = self.differ()
        if self.settings.refresh and not snapshot.is_empty:
            snapshot = differ.refresh(snapshot)
        plan = differ.plan(snapshot, destroy=destroy, replace=replace,
                           refresh=False, variables=self.variables)
        return plan, snapshot

    def executor(self, dry_run: bool = False) -> Executor:
        return Executor(self.graph, self.registry, self.store, self.settings, dry_run=dry_run)


def format_value(value, sensitive: bool = False) -> str:
    if is_unknown(value):
        return '(known after apply)'
    if sensitive:
        return SENSITIVE_PLACEHOLDER
    return json.dumps(value, default=str)


def print_plan(plan: Plan) -> None:
    """Print a human-readable plan."""
    if not plan.has_changes:
        print("No changes. Infrastructure matches the configuration.")
        return

    print("Planned changes:")
    print("")
    for change in plan.changes:
        if change.is_noop:
            continue
        header = f"  {_SYMBOLS[change.action]} {change.address}"
        if change.reason:
            header += f"  ({change.reason})"
        print(header)
        if change.action == CREATE:
            for key, value in sorted((change.after or {}).items()):
                print(f"        {key} = {format_value(value)}")
        elif change.action in (UPDATE, REPLACE):
            for key in change.changed:
                before = format_value((change.before or {}).get(key))
                after = format_value((change.after or {}).get(key))
                marker = '  # forces replacement' if key in change.requires_replace else ''
                print(f"        {key}: {before} -> {after}{marker}")
    print("")
    counts = plan.summary()
    print(f"Plan: {counts['add']} to add, {counts['change']} to change, {counts['destroy']} to destroy.")


def print_outputs(outputs: dict, show_sensitive: bool = False) -> None:
    if not outputs:
        return
    print("")
    print("Outputs:")
    for name, entry in sorted(outputs.items()):
        value = redact(entry.get('value'), entry.get('sensitive', False) and not show_sensitive)
        print(f"  {name} = {json.dumps(value, default=str)}")


def _plan_payload(plan: Plan) -> dict:
    return {'plan': plan.to_dict(), 'summary': plan.summary()}


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('plan')
    _add_plan_options(parser)
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Plan destruction of every managed resource',
    )
    parser.add_argument(
        '--out', '-o',
        help='Save the plan to a file for a later apply',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        ws = Workspace(args)
        with ws.locked('plan'):
            plan, _ = ws.plan(ws.store.read(), destroy=args.destroy, replace=tuple(args.replace))
        if args.out:
            plan.save(Path(args.out))
    except DOMAIN_ERRORS as e:
        return _error(str(e))

    if args.json_output:
        _emit_json('plan', True, _plan_payload(plan))
    else:
        print_plan(plan)
        if args.out:
            print(f"\nSaved plan to {args.out}. Apply it with: stackctl stack apply {args.out}")
    return 0


def _execute(ws: Workspace, args, verb: str, destroy: bool = False,
             saved: Optional[Plan] = None) -> int:
    """Plan (or load), confirm, and execute under the state lock."""
    start = time.time()
    with ws.locked(verb):
        snapshot = ws.store.read()
        if saved is not None:
            plan = saved
            plan.check_fresh(snapshot)
        else:
            plan, snapshot = ws.plan(snapshot, destroy=destroy, replace=tuple(getattr(args, 'replace', [])))

        if not args.json_output:
            print_plan(plan)
        needs_confirm = plan.has_changes and saved is None and not args.dry_run and not args.yes
        if needs_confirm:
            if destroy:
                print(f"\nWARNING: This will destroy all resources in stack '{ws.stack.name}'.")
                print("This action cannot be undone.")
            if not _confirm("Continue?"):
                print("Aborted.")
                return 1

        logger.info(f"{verb.capitalize()}ing stack '{ws.stack.name}' ({ws.store.description})")
        success, report = ws.executor(dry_run=args.dry_run).apply(plan, snapshot)
    duration = time.time() - start

    if args.json_output:
        _emit_json(verb, success, {'summary': plan.summary(), 'report': report.to_dict()}, duration)
        return 0 if success else 1

    if args.dry_run:
        return 0
    counts = plan.summary()
    if success:
        print(f"\n{verb.capitalize()} complete! Resources: {counts['add']} added, "
              f"{counts['change']} changed, {counts['destroy']} destroyed.")
    else:
        print(f"\n{verb.capitalize()} failed.", file=sys.stderr)
        for record in report.operations:
            if record.status in ('failed', 'skipped'):
                print(f"  {record.status}: {record.action} {record.address}: {record.error}",
                      file=sys.stderr)
    print_outputs(report.outputs)
    return 0 if success else 1


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('apply')
    _add_plan_options(parser)
    parser.add_argument(
        'plan_file',
        nargs='?',
        help='Saved plan from "stackctl stack plan --out"',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        saved = None
        if args.plan_file:
            saved = Plan.load(Path(args.plan_file))
            ws = Workspace(args, variables=saved.variables)
            if saved.stack_name != ws.stack.name:
                return _error(f"Plan is for stack '{saved.stack_name}', not '{ws.stack.name}'")
        else:
            ws = Workspace(args)
        return _execute(ws, args, 'apply', destroy=bool(saved and saved.destroy), saved=saved)
    except DOMAIN_ERRORS as e:
        return _error(str(e))


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _common_parser('destroy')
    _add_plan_options(parser)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        ws = Workspace(args)
        return _execute(ws, args, 'destroy', destroy=True)
    except DOMAIN_ERRORS as e:
        return _error(str(e))


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Loads the stack and its modules, resolves variables, expands the
    resource graph and checks every resource type has a provider.
    """
    parser = _common_parser('validate')
    _add_variable_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        ws = Workspace(args)
        graph = ws.graph
        for address in graph.addresses:
            ws.registry.schema(graph.get(address).type)
            logger.debug(f"{address}: depends on {', '.join(graph.dependencies(address)) or 'nothing'}")
    except DOMAIN_ERRORS as e:
        if args.json_output:
            _emit_json('validate', False, {'error': str(e)})
            return 1
        return _error(str(e))

    count = len(graph)
    if args.json_output:
        _emit_json('validate', True, {'stack': ws.stack.name, 'resources': graph.addresses})
    else:
        print(f"Stack '{ws.stack.name}' is valid ({count} resource{'s' if count != 1 else ''})")
    return 0


def output_main(argv: list) -> int:
    """Handle 'stack output' verb."""
    parser = _common_parser('output')
    parser.add_argument(
        'name',
        nargs='?',
        help='Show a single output',
    )
    parser.add_argument(
        '--show-sensitive',
        action='store_true',
        help='Print sensitive values instead of a placeholder',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        ws = Workspace(args, needs_variables=False)
        outputs = ws.store.read().outputs
    except DOMAIN_ERRORS as e:
        return _error(str(e))

    if args.name:
        if args.name not in outputs:
            return _error(f"Output '{args.name}' not found")
        outputs = {args.name: outputs[args.name]}

    if args.json_output:
        print(json.dumps(outputs, indent=2, default=str))
        return 0
    if args.name:
        entry = outputs[args.name]
        value = redact(entry.get('value'), entry.get('sensitive', False) and not args.show_sensitive)
        print(value if isinstance(value, str) else json.dumps(value, default=str))
        return 0
    if not outputs:
        print("No outputs.")
        return 0
    for name, entry in sorted(outputs.items()):
        value = redact(entry.get('value'), entry.get('sensitive', False) and not args.show_sensitive)
        print(f"{name} = {json.dumps(value, default=str)}")
    return 0


# -- state noun -----------------------------------------------------------

def _state_list(ws: Workspace, args) -> int:
    snapshot = ws.store.read()
    if args.json_output:
        _emit_json('state list', True, {
            'serial': snapshot.serial,
            'lineage': snapshot.lineage,
            'resources': [
                {'address': a, 'status': snapshot.resources[a].status}
                for a in snapshot.addresses
            ],
        })
        return 0
    for address in snapshot.addresses:
        suffix = ' (tainted)' if snapshot.resources[address].tainted else ''
        print(f"{address}{suffix}")
    return 0


def _state_show(ws: Workspace, args) -> int:
    resource = ws.store.read().get(args.address)
    if resource is None:
        return _error(f"No resource '{args.address}' in state")
    if args.json_output:
        print(json.dumps(resource.to_dict(), indent=2, default=str))
        return 0
    print(f"# {resource.address}{' (tainted)' if resource.tainted else ''}")
    print(f"type     = {resource.type}")
    print(f"provider = {resource.provider}")
    if resource.dependencies:
        print(f"depends  = {', '.join(resource.dependencies)}")
    for key, value in sorted(resource.attributes.items()):
        print(f"  {key} = {json.dumps(value, default=str)}")
    return 0


def _state_rm(ws: Workspace, args) -> int:
    with ws.locked('state rm'):
        snapshot = ws.store.read()
        missing = [a for a in args.addresses if snapshot.get(a) is None]
        if missing:
            return _error(f"No resource(s) in state: {', '.join(missing)}")
        for address in args.addresses:
            snapshot.remove(address)
            print(f"Removed {address}")
        ws.store.write(snapshot)
    return 0


def _state_taint(ws: Workspace, args) -> int:
    with ws.locked('state taint'):
        snapshot = ws.store.read()
        resource = snapshot.get(args.address)
        if resource is None:
            return _error(f"No resource '{args.address}' in state")
        resource.taint()
        ws.store.write(snapshot)
    print(f"Resource {args.address} marked as tainted; it will be replaced on next apply.")
    return 0


def _state_unlock(ws: Workspace, args) -> int:
    ws.store.unlock(args.lock_id, force=args.force)
    print(f"State lock {args.lock_id} released.")
    return 0


STATE_ACTIONS = {
    'list': (_state_list, 'List resources in state'),
    'show': (_state_show, 'Show one resource'),
    'rm': (_state_rm, 'Forget resources without destroying them'),
    'taint': (_state_taint, 'Mark a resource for replacement'),
    'unlock': (_state_unlock, 'Release a stuck state lock'),
}


def state_main(argv: list) -> int:
    """Handle 'state' noun."""
    if not argv or argv[0] not in STATE_ACTIONS:
        print("Usage: stackctl state <action> [options]")
        print()
        print("Actions:")
        for action, (_, desc) in STATE_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        if argv and not argv[0].startswith('-'):
            print(f"\nError: Unknown state action '{argv[0]}'")
            return 1
        return 1 if not argv else 0

    action, rest = argv[0], argv[1:]
    parser = _common_parser(action, noun='state')
    if action in ('show', 'taint'):
        parser.add_argument('address', help='Resource instance address')
    elif action == 'rm':
        parser.add_argument('addresses', nargs='+', help='Resource instance addresses')
    elif action == 'unlock':
        parser.add_argument('lock_id', help='ID of the lock to release')
        parser.add_argument(
            '--force',
            action='store_true',
            help='Release the lock even if the ID does not match the holder',
        )
    args = parser.parse_args(rest)
    _setup_logging(args.verbose, args.json_output)

    handler = STATE_ACTIONS[action][0]
    try:
        ws = Workspace(args, needs_variables=False)
        return handler(ws, args)
    except DOMAIN_ERRORS as e:
        return _error(str(e))
