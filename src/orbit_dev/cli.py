"""
Orbit command line

    orbit dev      Build, start the server, rebuild and restart on changes
    orbit build    Build once and exit (1 if the build failed)
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import DevConfig
from .console import Console
from .errors import ConfigError
from .orchestrator import DevOrchestrator
from .pipeline import BuildPipeline


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='orbit', description='Orbit app development tools')
    parser.add_argument('--root', default='.', help='Project root (default: current directory)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('dev', help='Watch, rebuild and supervise the dev server')
    commands.add_parser('build', help='Bundle actions and write route metadata once')
    return parser


def run_build(config: DevConfig, console: Console) -> int:
    """One-shot build; prints diagnostics on failure"""
    console.muted('[Orbit] Preparing runtime...')
    result = BuildPipeline(config).build()

    if not result.ok:
        console.line()
        console.line(result.render())
        return 1

    console.success('Metadata written successfully')
    if result.message:
        console.info(result.message)
    return 0


def run_dev(config: DevConfig, console: Console) -> int:
    orchestrator = DevOrchestrator(config, console)
    try:
        return asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        # Platforms without loop signal handlers; shutdown() already ran
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(name)s %(levelname)s %(message)s',
    )

    console = Console()
    try:
        config = DevConfig(args.root)
    except ConfigError as e:
        console.error(f'[Orbit] {e}')
        return 2

    if args.command == 'build':
        return run_build(config, console)
    return run_dev(config, console)


if __name__ == '__main__':
    raise SystemExit(main())
