"""
Command-line entry point for the pool autoscaler.
"""
import argparse
import json
import logging
import sys
import time
from pathlib import Path

from poolscale.autoscaling.autoscaler import PoolAutoscaler
from poolscale.config.config import Config
from poolscale.config.validation import validate_config
from poolscale.utils.logging_utils import setup_logging_from_config


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Autoscaling control system for model-serving pools")
    parser.add_argument("--config", type=str, default="config/autoscaling.yaml", help="Path to configuration file")
    parser.add_argument(
        "--action", type=str, choices=["run", "validate", "status"], default="status", help="Action to perform"
    )
    parser.add_argument("--log-level", type=str, default=None, help="Override the configured log level")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    config_path = Path(args.config)
    if not config_path.exists():
        logging.basicConfig(level=logging.INFO)
        logging.getLogger(__name__).error(f"Configuration file {config_path} not found")
        return 1

    config = Config(str(config_path))
    logging_config = config.section("logging")
    if args.action != "run":
        # One-shot actions only log to the console
        logging_config = dict(logging_config, log_to_file=False)
    else:
        config.ensure_dirs()
    setup_logging_from_config(logging_config, log_dir=str(config.logs_dir), level=args.log_level)
    logger = logging.getLogger(__name__)

    if args.action == "validate":
        errors = validate_config(config.config_data)
        if errors:
            logger.error(f"Configuration {config_path} has {len(errors)} errors")
            return 1
        logger.info(f"Configuration {config_path} is valid")
        return 0

    try:
        autoscaler = PoolAutoscaler(config)
    except Exception as e:
        logger.error(f"Error initializing autoscaler: {e}")
        return 1

    if args.action == "status":
        print(json.dumps(autoscaler.get_status(), indent=2, default=str))
        return 0

    autoscaler.start()
    try:
        while autoscaler.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        autoscaler.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())
