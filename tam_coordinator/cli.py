#!/usr/bin/env python3
"""
Command-Line Interface for the TAM Coordinator

Usage:
    coordinator /dev/ttyUSB0                       # Run with defaults at 9600 baud
    coordinator /dev/ttyUSB0 57600                 # Custom baud rate
    coordinator /dev/ttyUSB0 -c config.yaml        # Run with custom config
    coordinator /dev/ttyUSB0 --api                 # Run with status API server

Exit codes:
    0  clean shutdown
    1  serial link failure
    2  configuration error
"""

import argparse
import os
import sys

from .coordinator import Coordinator
from .exceptions import ConfigError
from .models import CoordinatorConfig


EXIT_OK = 0
EXIT_LINK_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coordinator",
        description="TAM Coordinator for XBee DigiMesh networks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  coordinator /dev/ttyUSB0                                   # Run with defaults
  coordinator /dev/ttyUSB0 -c config.yaml                    # Run with custom config
  coordinator /dev/ttyUSB0 --experiment tam_coordinator.experiments:RobotCommunicationTestExperiment
  coordinator /dev/ttyUSB0 --duration 600 --seed 42          # Ten minute run, fixed seed
  coordinator /dev/ttyUSB0 --api --api-port 8000             # Status API on port 8000
        """
    )
    parser.add_argument(
        "serial_device",
        nargs="?",
        default=None,
        help="Serial device of the local XBee (default: from config or /dev/ttyUSB0)",
    )
    parser.add_argument(
        "baud",
        nargs="?",
        default=None,
        help="Baud rate (default: from config or 9600)",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to config file (default: config.yaml if present)",
    )
    parser.add_argument(
        "--experiment",
        default=None,
        metavar="MODULE:CLASS",
        help="Experiment class to run",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed of the experiment (default: current time)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Finish the experiment after this many seconds",
    )
    parser.add_argument(
        "--api",
        action="store_true",
        help="Run with the read-only status API server",
    )
    parser.add_argument(
        "--api-host",
        default=None,
        help="API server host (default: from config or 0.0.0.0)",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="API server port (default: from config or 8080)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def load_config(args) -> CoordinatorConfig:
    """
    Build the configuration from the config file and command-line overrides.

    Raises:
        ConfigError: unreadable or invalid configuration.
    """
    path = args.config
    if path is None and os.path.exists("config.yaml"):
        path = "config.yaml"

    if path is None:
        config = CoordinatorConfig()
    else:
        try:
            config = CoordinatorConfig.from_yaml(path)
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e

    if args.serial_device:
        config.serial_port = args.serial_device
    if args.baud is not None:
        try:
            config.baudrate = int(args.baud)
        except ValueError:
            raise ConfigError(f"invalid baud rate: {args.baud!r}") from None
    if args.experiment:
        config.experiment_class = args.experiment
    if args.seed is not None:
        config.experiment_seed = args.seed
    if args.duration is not None:
        config.experiment_duration_s = args.duration
    if args.api:
        config.api.enabled = True
    if args.api_host:
        config.api.host = args.api_host
    if args.api_port:
        config.api.port = args.api_port
    if args.log_level:
        config.log_level = args.log_level

    config.validate()
    return config


def main(argv=None) -> int:
    """Command-line entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        coordinator = Coordinator(config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        if config.api.enabled:
            print("\n" + "=" * 50)
            print("TAM COORDINATOR + STATUS API")
            print("=" * 50)
            print(f"Serial:   {config.serial_port} @ {config.baudrate}")
            print(f"API Host: {config.api.host}")
            print(f"API Port: {config.api.port}")
            print("=" * 50)
            return coordinator.run_with_api()

        return coordinator.run()

    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        coordinator.shutdown()
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
