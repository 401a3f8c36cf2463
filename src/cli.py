#!/usr/bin/env python3
"""CLI entry point for gokp.

Noun-action subcommands:
- create-cluster: gokp create-cluster aws --cluster-name demo1 --github-token ... --aws-access-key ...
- pivot: gokp pivot status --workspace ~/.gokp/demo1
         gokp pivot resume --workspace ~/.gokp/.gokpinstall1234

Every failure ends with a single line on stderr, `Error [<category>]: <message>`,
and exit status 1.
"""

import argparse
import json
import logging
import signal
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from config import ClusterConfig, build_config, reports_dir
from errors import ConfigError, GokpError
from readiness import validate_readiness
from run_state import DONE, GITOPS_INSTALLED, STATE_FILE, WorkflowRun, state_index
from scenarios import Orchestrator, get_scenario

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "create-cluster": "Create a self-managed cluster (aws)",
    "pivot": "Inspect or resume an interrupted run (status/resume)",
}

# Provider subcommands of create-cluster
PROVIDERS = {
    "aws": "create-cluster-aws",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Installed distribution version, or 'dev' from a source checkout."""
    try:
        return version('gokp')
    except PackageNotFoundError:
        return 'dev'


class _Parser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors follow the gokp error format."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"Error [config]: {message}", file=sys.stderr)
        sys.exit(1)


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


def _print_error(error: GokpError) -> None:
    print(f"Error [{error.category}]: {error.message}", file=sys.stderr)


def _install_signal_handlers(workflow: WorkflowRun) -> None:
    """SIGINT/SIGTERM request a cooperative stop at the next check point."""
    def handler(signum, _frame):
        name = signal.Signals(signum).name
        logger.warning(f"Received {name}, stopping at the next safe point")
        workflow.cancel.cancel(f"interrupted by {name}")

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handler)


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"gokp {get_version()}")
    print()
    print("Usage: gokp <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<16} {desc}")
    print()
    print("Run 'gokp <noun> <action> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  gokp create-cluster aws --cluster-name demo1 --github-token $GH_TOKEN \\")
    print("      --aws-access-key $AWS_ACCESS_KEY_ID --aws-secret-key $AWS_SECRET_ACCESS_KEY")
    print("  gokp pivot status --workspace ~/.gokp/demo1")


def _create_cluster_parser(provider: str) -> argparse.ArgumentParser:
    parser = _Parser(
        prog=f'gokp create-cluster {provider}',
        description='Create a self-managed cluster through a temporary kind control plane',
    )
    parser.add_argument('--github-token', required=True,
                        help='GitHub token with repo scope (never written to disk)')
    parser.add_argument('--cluster-name', required=True,
                        help='Cluster name; also the repository and archive name')
    parser.add_argument('--aws-access-key', required=True, help='AWS access key ID')
    parser.add_argument('--aws-secret-key', required=True, help='AWS secret access key')
    parser.add_argument('--aws-region', help='AWS region (default: us-east-1)')
    parser.add_argument('--aws-ssh-key', help='Existing EC2 key pair name (default: default)')
    parser.add_argument('--aws-control-plane-machine',
                        help='Control plane instance type (default: m4.xlarge)')
    parser.add_argument('--aws-node-machine', help='Worker instance type (default: m4.xlarge)')
    parser.add_argument('--private-repo', dest='private_repo', action='store_true',
                        help='Create a private repository (default)')
    parser.add_argument('--public-repo', dest='private_repo', action='store_false',
                        help='Create a public repository')
    parser.add_argument('--ha', dest='ha', action='store_true',
                        help='Three control plane nodes (default)')
    parser.add_argument('--no-ha', dest='ha', action='store_false',
                        help='Single control plane node')
    parser.add_argument('--skip-cloud-formation', action='store_true', default=None,
                        help='Skip the one-time IAM CloudFormation stack')
    parser.add_argument('--kubernetes-version', help='Kubernetes version (default: v1.23.3)')
    parser.add_argument('--worker-count', type=int, help='Number of worker nodes (default: 3)')
    parser.add_argument('--ready-timeout', type=int,
                        help='Seconds to wait for the cluster to become ready (default: 2400)')
    parser.add_argument('--timeout', '-t', type=int,
                        help='Overall timeout in seconds. Checked between states.')
    parser.add_argument('--report-dir', '-r', type=Path,
                        help='Directory for run reports (default: ~/.gokp/.reports)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show what would be executed without running actions')
    parser.add_argument('--list-phases', action='store_true',
                        help='List the states of the run and exit')
    parser.add_argument('--skip-preflight', action='store_true',
                        help='Skip pre-flight checks (tools, GitHub token)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--json-output', action='store_true',
                        help='Output structured JSON to stdout (logs go to stderr)')
    parser.set_defaults(private_repo=None, ha=None)
    return parser


def _handle_results(args, orchestrator: Orchestrator, success: bool) -> int:
    """Print the outcome and return the exit code."""
    if orchestrator.error is not None:
        _print_error(orchestrator.error)

    if args.json_output:
        print(json.dumps(orchestrator.report.to_dict(orchestrator.workflow), indent=2))
    elif success and not getattr(args, 'dry_run', False):
        wf = orchestrator.workflow
        print()
        print(f"Cluster '{wf.cluster_name}' is ready.")
        if wf.target is not None:
            print(f"  Kubeconfig: {wf.target.kubeconfig}")
        if wf.repository:
            print(f"  Repository: {wf.repository.get('url')}")
        print(f"  Artifacts:  {wf.workspace}")

    return 0 if success else 1


def create_cluster_main(provider: str, argv: list) -> int:
    """Handle 'create-cluster <provider>'."""
    args = _create_cluster_parser(provider).parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    scenario = get_scenario(PROVIDERS[provider])
    overrides = {
        'github_token': args.github_token,
        'aws_access_key': args.aws_access_key,
        'aws_secret_key': args.aws_secret_key,
        'aws_region': args.aws_region,
        'aws_ssh_key': args.aws_ssh_key,
        'aws_control_plane_machine': args.aws_control_plane_machine,
        'aws_node_machine': args.aws_node_machine,
        'private_repo': args.private_repo,
        'ha': args.ha,
        'skip_cloud_formation': args.skip_cloud_formation,
        'kubernetes_version': args.kubernetes_version,
        'worker_count': args.worker_count,
        'ready_timeout': args.ready_timeout,
    }
    try:
        config = build_config(args.cluster_name, overrides)
    except GokpError as e:
        _print_error(e)
        return 1

    if args.list_phases:
        print(f"States for '{scenario.name}':")
        for state, _action, desc in scenario.get_phases(config):
            print(f"  {state}: {desc}")
        return 0

    if not args.skip_preflight and not args.dry_run:
        errors, warnings = validate_readiness(config)
        for warning in warnings:
            logger.warning(f"Pre-flight: {warning}")
        if errors:
            print("\nPre-flight validation failed:", file=sys.stderr)
            for error in errors:
                print(f"  ✗ {error}", file=sys.stderr)
            print("\nUse --skip-preflight to bypass these checks", file=sys.stderr)
            _print_error(ConfigError(errors[0]))
            return 1
        logger.info("Pre-flight validation passed")

    orchestrator = Orchestrator(
        scenario=scenario,
        config=config,
        report_dir=args.report_dir or reports_dir(),
        timeout=args.timeout,
        dry_run=args.dry_run,
    )
    _install_signal_handlers(orchestrator.workflow)

    success = orchestrator.run()
    return _handle_results(args, orchestrator, success)


def dispatch_create_cluster(argv: list) -> int:
    """Dispatch 'create-cluster' noun to the provider handler."""
    if not argv or argv[0].startswith('-'):
        print("Usage: gokp create-cluster <provider> [options]")
        print()
        print("Providers:")
        for provider in PROVIDERS:
            print(f"  {provider}")
        return 1 if not argv else 0

    provider = argv[0]
    if provider not in PROVIDERS:
        print(f"Error [config]: Unknown provider '{provider}'. Available: {', '.join(PROVIDERS)}",
              file=sys.stderr)
        return 1
    return create_cluster_main(provider, argv[1:])


def _pivot_parser(action: str) -> argparse.ArgumentParser:
    parser = _Parser(prog=f'gokp pivot {action}')
    parser.add_argument('--workspace', '-w', type=Path, required=True,
                        help=f'Workspace or archive directory containing {STATE_FILE}')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--json-output', action='store_true',
                        help='Output structured JSON to stdout (logs go to stderr)')
    return parser


def _load_run(workspace: Path) -> WorkflowRun:
    try:
        return WorkflowRun.load(workspace)
    except FileNotFoundError:
        raise ConfigError(f"No {STATE_FILE} in {workspace}") from None
    except (ValueError, KeyError) as e:
        raise ConfigError(f"Corrupt {STATE_FILE} in {workspace}: {e}") from e


def pivot_status_main(argv: list) -> int:
    """Show the persisted state of a run."""
    args = _pivot_parser('status').parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    try:
        run = _load_run(args.workspace)
    except GokpError as e:
        _print_error(e)
        return 1

    if args.json_output:
        print(json.dumps(run.to_dict(), indent=2))
        return 0

    print(f"Cluster:        {run.cluster_name}")
    print(f"State:          {run.state}")
    if run.error:
        print(f"Stopped after:  {run.last_completed}")
        print(f"Error:          [{run.error.get('category')}] {run.error.get('message')}")
    print(f"Pivot phase:    {run.pivot_phase}")
    print(f"Authoritative:  {run.authoritative}")
    if run.target is not None:
        print(f"Kubeconfig:     {run.target.kubeconfig}")
    if run.repository:
        print(f"Repository:     {run.repository.get('url')}")
    if run.pivot_in_flight:
        print()
        print(f"Pivot was interrupted in phase '{run.pivot_phase}'.")
        print(f"Resume with: gokp pivot resume --workspace {args.workspace}")
    return 0


def pivot_resume_main(argv: list) -> int:
    """Re-run the remaining states of a run that got past GitOps install."""
    args = _pivot_parser('resume').parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    try:
        run = _load_run(args.workspace)
        if run.state == DONE:
            print(f"Run for '{run.cluster_name}' already completed")
            return 0
        last = run.last_completed
        if state_index(last) < state_index(GITOPS_INSTALLED):
            raise ConfigError(
                f"Run stopped after {last}; only runs that reached {GITOPS_INSTALLED} can be resumed")
        config = ClusterConfig(cluster_name=run.cluster_name)
    except GokpError as e:
        _print_error(e)
        return 1

    scenario = get_scenario(PROVIDERS['aws'])
    orchestrator = Orchestrator(
        scenario=scenario,
        config=config,
        report_dir=reports_dir(),
        workflow=run,
        resume_from=last,
    )
    _install_signal_handlers(orchestrator.workflow)
    success = orchestrator.run()
    return _handle_results(args, orchestrator, success)


def dispatch_pivot(argv: list) -> int:
    """Dispatch 'pivot' noun to action-specific handler."""
    if not argv or argv[0].startswith('-'):
        print("Usage: gokp pivot <action> --workspace PATH")
        print()
        print("Actions:")
        print("  status    Show the persisted state of a run")
        print("  resume    Continue a run interrupted at or after the pivot")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]
    if action == "status":
        return pivot_status_main(rest)
    if action == "resume":
        return pivot_resume_main(rest)

    print(f"Error [config]: Unknown pivot action '{action}'", file=sys.stderr)
    print("Available actions: status, resume", file=sys.stderr)
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler."""
    if noun == "create-cluster":
        return dispatch_create_cluster(argv)
    if noun == "pivot":
        return dispatch_pivot(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def main(argv=None) -> int:
    """CLI entry point."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"gokp {get_version()}")
        return 0
    if argv[0] in NOUN_COMMANDS:
        return dispatch_noun(argv[0], argv[1:])

    print(f"Error [config]: Unknown command '{argv[0]}'", file=sys.stderr)
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
