"""
Pull agent CLI entry point.
"""

import argparse
import asyncio
import logging
import sys

from pull_agent.config.settings import PullAgentConfig
from pull_agent.exceptions import ConfigurationError
from pull_agent.logging_config import setup_logging
from pull_agent.service import PullAgent

DEFAULT_CONFIG_PATH = "/etc/pull-agent/config.yml"


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Pull agent - GitOps deployments with rollback and canary rollouts"
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file",
    )

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )

    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )

    args = parser.parse_args()

    if args.generate_config:
        config = PullAgentConfig()
        config.save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return 0

    if args.validate_config:
        try:
            PullAgentConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return 0
        except ConfigurationError as e:
            print(f"Configuration invalid: {e}")
            return 1

    try:
        config = PullAgentConfig.from_file(args.config)
    except ConfigurationError as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(
        log_dir=config.logging.log_dir,
        console_level="DEBUG" if args.verbose else config.logging.console_level,
        use_json=config.logging.use_json,
    )
    logger = logging.getLogger(__name__)
    logger.info(f"Configuration loaded from {args.config}")

    try:
        agent = PullAgent(config)
        asyncio.run(agent.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        # Print to stderr for the service manager's journal
        print(f"Error running pull agent: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
