"""Command-line interface for trialgate.

Starts the REST gateway and manages its configuration.
"""

import argparse
import sys
from pathlib import Path
from typing import Optional

from .config import GatewayConfig
from .exceptions import ConfigurationError, GatewayError
from .logging import log_error, setup_logging
from .rest.server import RestServer, load_collaborators


def _add_global_cli_options(parser: argparse.ArgumentParser) -> None:
    """Add global CLI options shared by main and script entrypoints."""
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Configuration file (YAML)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        description="trialgate: REST control plane for experiments, trial jobs and TensorBoard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve a new experiment
  trialgate serve --manager my_engine.bootstrap:build --port 8080

  # Resume an existing experiment
  trialgate-serve --config gateway.yaml --mode resume

  # Write a configuration template
  trialgate config template --output gateway.yaml
        """
    )

    _add_global_cli_options(parser)

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the REST gateway")
    serve_parser.add_argument(
        "--host",
        type=str,
        help="Listen address"
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        help="Listen port"
    )
    serve_parser.add_argument(
        "--mode",
        choices=["new", "resume"],
        help="Whether POST /experiment starts a new experiment or resumes one"
    )
    serve_parser.add_argument(
        "--manager",
        type=str,
        help="Collaborator factory as 'package.module:callable'"
    )

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.add_argument(
        "action",
        choices=["show", "validate", "template"],
        help="Configuration action"
    )
    config_parser.add_argument(
        "--output",
        type=Path,
        help="Output file for template"
    )

    return parser


def load_configuration(args: argparse.Namespace) -> GatewayConfig:
    """Load the configuration and apply global overrides."""
    if args.config:
        if not args.config.exists():
            raise ConfigurationError(f"Configuration file not found: {args.config}")
        try:
            config = GatewayConfig.from_yaml(args.config)
        except Exception as e:
            raise ConfigurationError(f"Failed to load config from {args.config}: {e}") from e
    else:
        config = GatewayConfig()

    if args.verbose or args.debug:
        config.logging.level = "DEBUG" if args.debug else "INFO"

    return config


def main_serve(args: argparse.Namespace) -> int:
    """Run the REST gateway until it is stopped."""
    try:
        config = load_configuration(args)

        if args.host:
            config.server.host = args.host
        if args.port is not None:
            config.server.port = args.port
        if args.mode:
            config.server.experiment_mode = args.mode
        if args.manager:
            config.server.manager_factory = args.manager

        setup_logging(config)

        manager, datastore = load_collaborators(config)
        server = RestServer(manager, datastore, config=config)
        server.run()

        return 0

    except GatewayError as e:
        log_error(e)
        print(f"trialgate error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        log_error(e)
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 1


def main_config(args: argparse.Namespace) -> int:
    """Run configuration management command."""
    try:
        if args.action == "show":
            config = load_configuration(args)
            print("Current Configuration:")
            print("=" * 50)
            for section_name, section in config.model_dump(mode="json").items():
                print(f"\n{section_name.upper()}:")
                if isinstance(section, dict):
                    for key, value in section.items():
                        print(f"  {key}: {value}")
                else:
                    print(f"  {section}")

        elif args.action == "validate":
            load_configuration(args)
            print("Configuration is valid")

        elif args.action == "template":
            output_path = args.output or Path("trialgate.yaml")
            GatewayConfig().to_yaml(output_path)
            print(f"Template configuration saved to: {output_path}")

        return 0

    except GatewayError as e:
        print(f"trialgate error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 1


def _dispatch_command(args: argparse.Namespace) -> int:
    """Route parsed arguments to the corresponding command handler."""
    command_handlers = {
        "serve": main_serve,
        "config": main_config,
    }

    handler = command_handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1


def _main_with_argv(argv: Optional[list] = None) -> int:
    """Main CLI execution path with optional argv override for script wrappers."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    return _dispatch_command(args)


def _parse_entrypoint_args(command: str, raw_argv: Optional[list] = None) -> argparse.Namespace:
    """Parse script-entrypoint args while allowing global options anywhere."""
    argv = list(sys.argv[1:] if raw_argv is None else raw_argv)

    global_parser = argparse.ArgumentParser(add_help=False)
    _add_global_cli_options(global_parser)
    global_args, remaining = global_parser.parse_known_args(argv)

    parser = create_parser()
    args = parser.parse_args([command, *remaining])

    for field_name in ("config", "verbose", "debug"):
        value = getattr(global_args, field_name)
        if value != global_parser.get_default(field_name):
            setattr(args, field_name, value)

    return args


def main() -> int:
    """Main CLI entry point."""
    return _main_with_argv()


def main_serve_entry() -> int:
    """Console-script entry point for trialgate-serve."""
    return _dispatch_command(_parse_entrypoint_args("serve"))


if __name__ == "__main__":
    sys.exit(main())
