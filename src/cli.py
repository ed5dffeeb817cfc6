#!/usr/bin/env python3
"""CLI entry point for envkeeper.

Commands:
- import:  Create or update environments from manifests
- export:  Back up every environment to a manifest
- upgrade: Upgrade all packages in existing environments in place
- check:   Preflight checks (conda, manifests, channels)

Examples:
    envkeeper export --dir ~/backups/conda
    envkeeper import --dir ~/backups/conda --timeout 900
    envkeeper import --upgrade
    envkeeper upgrade --env data --env tools
"""

import argparse
import json
import logging
import sys
from importlib import metadata
from pathlib import Path
from typing import Optional

from common import ManagerError, ManagerNotFoundError, ManifestDirectoryMissingError
from config import DEFAULT_MANIFEST_DIR, DEFAULT_TIMEOUT, ConfigError, Settings, load_settings
from env_opr.orchestrator import EnvironmentOrchestrator
from manager import CondaManager, find_conda
from manifest import discover_manifests
from reporting import persist, render, report_filename, to_dict
from validation import format_preflight_results, run_preflight_checks

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2

COMMANDS = {
    "import": "Create or update environments from manifests",
    "export": "Back up every environment to a manifest",
    "upgrade": "Upgrade all packages in existing environments",
    "check": "Preflight checks (conda, manifests, channels)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    try:
        return metadata.version('envkeeper')
    except metadata.PackageNotFoundError:
        return 'dev'


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {number}")
    return number


def _common_parser(command: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by all commands."""
    parser = argparse.ArgumentParser(
        prog=f'envkeeper {command}',
        description=COMMANDS[command],
    )
    parser.add_argument(
        '--config',
        help='YAML settings file (default: $ENVKEEPER_CONFIG)',
    )
    parser.add_argument(
        '--conda',
        help='Path to the conda executable (default: auto-detect)',
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
    return parser


def _add_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--dir', '-d',
        dest='manifest_dir',
        type=Path,
        help=f'Manifest directory (default: {DEFAULT_MANIFEST_DIR})',
    )


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--timeout', '-t',
        type=_positive_int,
        help=f'Deadline in seconds for supervised installs (default: {DEFAULT_TIMEOUT})',
    )
    parser.add_argument(
        '--report-dir',
        type=Path,
        help='Directory for the report file (default: current directory)',
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


def _load_settings(args) -> Settings:
    """Load settings from file and apply CLI overrides.

    Raises:
        ConfigError: On an invalid config file
    """
    settings = load_settings(args.config)
    if getattr(args, 'manifest_dir', None) is not None:
        settings.manifest_dir = args.manifest_dir
    if getattr(args, 'timeout', None) is not None:
        settings.timeout = args.timeout
    if getattr(args, 'report_dir', None) is not None:
        settings.report_dir = args.report_dir
    if getattr(args, 'upgrade', False):
        settings.upgrade = True
    if args.conda:
        settings.conda = args.conda
    return settings


def _build_orchestrator(settings: Settings) -> EnvironmentOrchestrator:
    """Locate conda and build the orchestrator.

    Raises:
        ManagerNotFoundError: If conda cannot be located
    """
    conda = find_conda(settings.conda)
    logger.info(f"Using conda: {conda}")
    manager = CondaManager(conda, solver=settings.solver)
    return EnvironmentOrchestrator(manager=manager, settings=settings)


def _finish_run(args, settings: Settings, report) -> int:
    """Persist the report, print the summary, and pick the exit code."""
    path = settings.report_dir / report_filename(report.command, report.started_at)
    try:
        persist(report, path)
        logger.info(f"Report written to {path}")
    except OSError as e:
        logger.error(f"Could not write report to {path}: {e}")

    if args.json_output:
        data = to_dict(report)
        data['report_file'] = str(path)
        print(json.dumps(data, indent=2))
    else:
        print(render(report))

    return EXIT_OK if report.all_succeeded else EXIT_PARTIAL


def _print_preview(plan) -> None:
    print("")
    print("═══════════════════════════════════════════════════════════════")
    print("  DRY-RUN: import")
    print("═══════════════════════════════════════════════════════════════")
    for entry in plan:
        print(f"  [{entry.classification.complexity.value:>8}] {entry.name}: {entry.route}")
        print(f"             {entry.classification.reason} ({entry.source})")
    print("═══════════════════════════════════════════════════════════════")
    print(f"  Summary: {len(plan)} environments, "
          f"{sum(1 for e in plan if e.route == 'supervised')} supervised")
    print("  Mode: DRY-RUN (no changes made)")
    print("")


def import_main(argv: list) -> int:
    """Handle 'import' command."""
    parser = _common_parser('import')
    _add_dir(parser)
    _add_run_options(parser)
    parser.add_argument(
        '--upgrade', '-u',
        action='store_true',
        help='Strip version pins before installing (get latest compatible versions)',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Classify manifests and show the plan without installing',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        manifests = discover_manifests(settings.manifest_dir)
        if args.dry_run:
            orchestrator = EnvironmentOrchestrator(
                manager=CondaManager(settings.conda or 'conda', solver=settings.solver),
                settings=settings,
            )
            _print_preview(orchestrator.preview(manifests))
            return EXIT_OK
        orchestrator = _build_orchestrator(settings)
    except (ConfigError, ManifestDirectoryMissingError, ManagerNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    if not manifests:
        logger.warning(f"No manifests found in {settings.manifest_dir}")

    report = orchestrator.run(manifests)
    return _finish_run(args, settings, report)


def upgrade_main(argv: list) -> int:
    """Handle 'upgrade' command."""
    parser = _common_parser('upgrade')
    _add_run_options(parser)
    parser.add_argument(
        '--env', '-e',
        action='append',
        dest='envs',
        help='Environment to upgrade (repeatable; default: all except base)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        orchestrator = _build_orchestrator(settings)
        envs = list(dict.fromkeys(args.envs)) if args.envs else None
        report = orchestrator.upgrade_all(envs)
    except (ConfigError, ManagerNotFoundError, ManagerError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    return _finish_run(args, settings, report)


def export_main(argv: list) -> int:
    """Handle 'export' command."""
    parser = _common_parser('export')
    _add_dir(parser)
    parser.add_argument(
        '--include-base',
        action='store_true',
        help='Also export the base environment',
    )
    parser.add_argument(
        '--with-builds',
        action='store_true',
        help='Keep build strings in exported manifests',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
        orchestrator = _build_orchestrator(settings)
        results = orchestrator.export_all(
            settings.manifest_dir,
            include_base=args.include_base,
            no_builds=not args.with_builds,
        )
    except (ConfigError, ManagerNotFoundError, ManagerError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    failed = [name for name, ok, _ in results if not ok]
    if args.json_output:
        print(json.dumps({
            'command': 'export',
            'target': str(settings.manifest_dir),
            'environments': [{'name': n, 'success': ok, 'message': m} for n, ok, m in results],
        }, indent=2))
    else:
        print(f"Exported {len(results) - len(failed)}/{len(results)} environment(s) "
              f"to {settings.manifest_dir}")
        for name in failed:
            print(f"  ✗ {name}")

    return EXIT_PARTIAL if failed else EXIT_OK


def check_main(argv: list) -> int:
    """Handle 'check' command."""
    parser = _common_parser('check')
    _add_dir(parser)
    parser.add_argument(
        '--skip-network',
        action='store_true',
        help='Do not check channel URLs',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        settings = _load_settings(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FATAL

    success, results = run_preflight_checks(settings, check_network=not args.skip_network)
    if args.json_output:
        print(json.dumps({'success': success, 'results': results}, indent=2))
    else:
        print(format_preflight_results(settings.manifest_dir, results))
    return EXIT_OK if success else EXIT_FATAL


HANDLERS = {
    "import": import_main,
    "export": export_main,
    "upgrade": upgrade_main,
    "check": check_main,
}


def print_usage():
    """Print top-level usage."""
    print(f"envkeeper {get_version()}")
    print()
    print("Usage: envkeeper <command> [options]")
    print()
    print("Commands:")
    for command, desc in COMMANDS.items():
        print(f"  {command:<10} {desc}")
    print()
    print("Run 'envkeeper <command> --help' for command-specific options.")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return EXIT_OK
    if argv[0] == '--version':
        print(get_version())
        return EXIT_OK

    command = argv[0]
    if command not in HANDLERS:
        print(f"Error: Unknown command '{command}'")
        print_usage()
        return EXIT_FATAL
    return HANDLERS[command](argv[1:])


if __name__ == '__main__':
    sys.exit(main())
