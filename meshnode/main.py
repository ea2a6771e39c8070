#!/usr/bin/env python3
# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
meshnode - Main Entry Point

Runs one mesh relay node over UDP: the relay core (forwarding, reputation,
multi-path routing, priority dispatch, auto-healing, ledger) bound to the
UDP peering transport.

Usage:
    python -m meshnode.main --config node.yaml
    python -m meshnode.main --config node.yaml --log-level DEBUG
"""

import argparse
import logging
import signal
import sys
import time
from pathlib import Path

from .config import load_config, create_default_config, NodeConfig
from .node import MeshNode

# Global flag for graceful shutdown
_shutdown_requested = False

STATUS_LOG_INTERVAL = 60.0


def setup_logging(config: NodeConfig) -> logging.Logger:
    """Configure logging based on node configuration."""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers = [logging.StreamHandler(sys.stdout)]

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format=log_format,
        handlers=handlers
    )

    return logging.getLogger("meshnode.node")


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global _shutdown_requested
    _shutdown_requested = True
    logging.getLogger("meshnode.node").info(
        f"Received signal {signum}, initiating graceful shutdown..."
    )


class NodeRunner:
    """
    Runs a MeshNode until shutdown is requested.

    Logs a one-line status summary every STATUS_LOG_INTERVAL seconds.
    """

    def __init__(self, config: NodeConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.node = MeshNode.from_config(config)

    def _log_status(self) -> None:
        status = self.node.status()
        dispatcher = status["dispatcher"]
        forwarding = status["forwarding"]["metrics"]
        self.logger.info(
            f"Status: peers={len(status['connected_peers'])}, "
            f"queue={dispatcher['queue_size']}, sent={dispatcher['sent']}, "
            f"relayed={forwarding['messages_relayed']}, delivered={forwarding['delivered']}, "
            f"heal={status['healing']['last_action']}"
        )

    def run(self):
        """Main node loop."""
        global _shutdown_requested

        self.logger.info(f"Starting meshnode: {self.config.node_id}")
        self.node.on_deliver(
            lambda message: self.logger.info(
                f"Message from {message.origin_id}: {len(message.payload)} bytes "
                f"({message.qos_class.value})"
            )
        )
        self.node.start()

        last_status = time.time()
        while not _shutdown_requested:
            if time.time() - last_status >= STATUS_LOG_INTERVAL:
                self._log_status()
                last_status = time.time()
            time.sleep(1)

        self.logger.info("meshnode shutting down...")

    def cleanup(self):
        """Cleanup resources on shutdown."""
        self.node.stop()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="meshnode relay node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m meshnode.main --config node.yaml
  python -m meshnode.main --config node.yaml --log-level DEBUG
  python -m meshnode.main --init-config --node-id relay-001
        """
    )

    parser.add_argument(
        "--config", "-c",
        default="node.yaml",
        help="Path to configuration file (default: node.yaml)"
    )

    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level from config"
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Initialize a new configuration file"
    )

    parser.add_argument(
        "--node-id",
        help="Node ID for init-config"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=7777,
        help="UDP listen port for init-config (default: 7777)"
    )

    args = parser.parse_args()

    # Handle config initialization
    if args.init_config:
        if not args.node_id:
            parser.error("--init-config requires --node-id")

        config_path = create_default_config(args.config, args.node_id, args.port)
        print(f"Configuration file created: {config_path}")
        return 0

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"Error: Configuration file not found: {args.config}")
        print("Use --init-config to create a new configuration file")
        return 1
    except Exception as e:
        print(f"Error loading configuration: {e}")
        return 1

    # Override log level if specified
    if args.log_level:
        config.log_level = args.log_level

    logger = setup_logging(config)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    runner = NodeRunner(config, logger)

    try:
        runner.run()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        runner.cleanup()

    return 0


if __name__ == "__main__":
    sys.exit(main())
