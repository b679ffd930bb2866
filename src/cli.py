#!/usr/bin/env python3
"""CLI entry point for stackctl.

Noun-action subcommands:
- stackctl stack plan -f stack.yaml
- stackctl state list

Nouns:
- stack: Stack lifecycle (plan/apply/destroy/validate/output)
- state: State inspection and repair (list/show/rm/taint/unlock)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Stack lifecycle (plan/apply/destroy/validate/output)",
    "state": "State inspection and repair (list/show/rm/taint/unlock)",
}

STACK_ACTIONS = {
    "plan": "Show changes needed to reconcile state with the stack",
    "apply": "Apply a fresh or saved plan",
    "destroy": "Destroy every resource managed by the stack",
    "validate": "Check stack syntax, references and dependencies",
    "output": "Show stack outputs from state",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def dispatch_stack(argv: list) -> int:
    """Dispatch 'stack' noun to action-specific handler.

    Args:
        argv: Arguments after 'stack' (e.g., ['apply', '-f', 'stack.yaml'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: stackctl stack <action> [options]")
        print()
        print("Actions:")
        for action, desc in STACK_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        print()
        print("Run 'stackctl stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "plan":
        from reconciler.cli import plan_main
        rc: int = plan_main(rest)
        return rc
    if action == "apply":
        from reconciler.cli import apply_main
        rc = apply_main(rest)
        return rc
    if action == "destroy":
        from reconciler.cli import destroy_main
        rc = destroy_main(rest)
        return rc
    if action == "validate":
        from reconciler.cli import validate_main
        rc = validate_main(rest)
        return rc
    if action == "output":
        from reconciler.cli import output_main
        rc = output_main(rest)
        return rc

    print(f"Error: Unknown stack action '{action}'")
    print(f"Available actions: {', '.join(STACK_ACTIONS)}")
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack", "state")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        return dispatch_stack(argv)

    if noun == "state":
        from reconciler.cli import state_main
        rc: int = state_main(argv)
        return rc

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"stackctl {get_version()}")
    print()
    print("Usage: stackctl <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'stackctl <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  stackctl stack plan -f stacks/example --var env=dev")
    print("  stackctl stack apply --yes --parallelism 4")
    print("  stackctl stack plan --out plan.json && stackctl stack apply plan.json")
    print("  stackctl state list")
    print("  stackctl state taint local_file.config")


def main():
    """CLI entry point: dispatch to noun-action handlers."""
    if len(sys.argv) == 1:
        print_usage()
        return 0

    first_arg = sys.argv[1]
    if first_arg in ('--version', '-V'):
        print(f"stackctl {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, sys.argv[2:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
