"""
Command-line interface for rocksbuild.

This module provides the `rocksbuild` CLI tool. `rocksbuild build` prints
Cargo-style link directives on stdout so it can be called from a build
script; everything else goes to stderr.
"""

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from rocksbuild import __version__
from rocksbuild.build import BuildOrchestrator
from rocksbuild.cli_utils import ErrorFormatter, PathValidator, setup_logging
from rocksbuild.config import BuildConfig
from rocksbuild.errors import BuildError
from rocksbuild.packages import PackageDownloader, SubmoduleSynchronizer
from rocksbuild.process_runner import ProcessRunner


@dataclass
class BuildArgs:
    """Arguments shared by the build, plan and sync commands."""

    project_dir: Optional[Path] = None
    features: Optional[str] = None
    target: Optional[str] = None
    jobs: Optional[int] = None
    out_dir: Optional[Path] = None
    verbose: bool = False

    def overrides(self) -> Dict[str, object]:
        return {
            "features": self.features,
            "target": self.target,
            "jobs": self.jobs,
            "out_dir": self.out_dir,
        }


def _load_config(args: BuildArgs) -> BuildConfig:
    config = BuildConfig.load(args.project_dir, overrides=args.overrides())
    setup_logging(config.out_dir, verbose=args.verbose)
    return config


def build_command(args: BuildArgs) -> None:
    """Build the native libraries and print link directives.

    Examples:
        rocksbuild build                       # Build with default features
        rocksbuild build -f snappy,lz4         # Enable features
        rocksbuild build --target aarch64-apple-darwin
        rocksbuild build -j 16 --verbose
    """
    try:
        config = _load_config(args)
        print(f"rocksbuild v{__version__}: building for {config.target}", file=sys.stderr)

        result = BuildOrchestrator().build(config)

        if result.success:
            for line in result.render_directives():
                print(line)
            ErrorFormatter.print_success("Build successful!")
            if result.bindings_path:
                print(f"Bindings: {result.bindings_path}", file=sys.stderr)
            print(f"Build time: {result.build_time:.2f}s", file=sys.stderr)
            sys.exit(0)
        else:
            ErrorFormatter.print_error("Build failed!", result.message)
            sys.exit(1)

    except BuildError as e:
        ErrorFormatter.handle_build_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def plan_command(args: BuildArgs) -> None:
    """Print the resolved compiler configuration and source manifest as JSON.

    Nothing is compiled. Two runs with the same inputs print the same text.

    Examples:
        rocksbuild plan
        rocksbuild plan --target x86_64-pc-windows-msvc -f snappy
    """
    try:
        config = _load_config(args)
        plan = BuildOrchestrator().plan(config)
        print(json.dumps(plan.to_dict(), indent=2, sort_keys=True))
        sys.exit(0)

    except BuildError as e:
        ErrorFormatter.handle_build_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def sync_command(args: BuildArgs) -> None:
    """Make sure the rocksdb/ (and spdk/) source trees are present.

    Examples:
        rocksbuild sync
        rocksbuild sync -f spdk
    """
    try:
        config = _load_config(args)
        synchronizer = SubmoduleSynchronizer(
            config, ProcessRunner(config.environment()), PackageDownloader()
        )
        fetched = synchronizer.ensure_all()
        if fetched:
            ErrorFormatter.print_success(f"Fetched: {', '.join(fetched)}")
        else:
            ErrorFormatter.print_success("All submodules present")
        sys.exit(0)

    except BuildError as e:
        ErrorFormatter.handle_build_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "project_dir",
        nargs="?",
        type=Path,
        default=None,
        help="Project directory (default: CARGO_MANIFEST_DIR, then current directory)",
    )
    parser.add_argument(
        "-f",
        "--features",
        default=None,
        help="Comma-separated features to enable (e.g. 'snappy,lz4,io-uring')",
    )
    parser.add_argument(
        "--target",
        default=None,
        help="Target triple (default: TARGET, then the host)",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        default=None,
        type=int,
        help="Parallel compile jobs (default: NUM_JOBS, then CPU count)",
    )
    parser.add_argument(
        "--out-dir",
        default=None,
        type=Path,
        help="Output directory (default: OUT_DIR, then .rocksbuild/out)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output",
    )


def main() -> None:
    """rocksbuild - build RocksDB and friends from source."""
    parser = argparse.ArgumentParser(
        prog="rocksbuild",
        description="rocksbuild - native build orchestrator for RocksDB",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"rocksbuild {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    build_parser = subparsers.add_parser(
        "build",
        help="Build the native libraries and print link directives",
    )
    _add_common_arguments(build_parser)

    plan_parser = subparsers.add_parser(
        "plan",
        help="Print the resolved build configuration as JSON",
    )
    _add_common_arguments(plan_parser)

    sync_parser = subparsers.add_parser(
        "sync",
        help="Fetch missing submodules",
    )
    _add_common_arguments(sync_parser)

    # Parse arguments
    parsed_args = parser.parse_args()

    # If no command specified, show help
    if not parsed_args.command:
        parser.print_help()
        sys.exit(0)

    if parsed_args.project_dir is not None:
        PathValidator.validate_project_dir(parsed_args.project_dir)

    args = BuildArgs(
        project_dir=parsed_args.project_dir,
        features=parsed_args.features,
        target=parsed_args.target,
        jobs=parsed_args.jobs,
        out_dir=parsed_args.out_dir,
        verbose=parsed_args.verbose,
    )

    # Execute command
    if parsed_args.command == "build":
        build_command(args)
    elif parsed_args.command == "plan":
        plan_command(args)
    elif parsed_args.command == "sync":
        sync_command(args)


if __name__ == "__main__":
    main()
