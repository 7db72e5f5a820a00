#!/usr/bin/env python3
"""Entry point for the SPL token provisioner.

Funds the payer on the configured cluster, creates a token mint, issues
tokens to the payer and transfers part of them to a fresh receiver.
"""

import argparse
import asyncio
import logging
import os
import sys

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from solders.keypair import Keypair

from spl_provisioner.config import ProvisionerConfig
from spl_provisioner.errors import MalformedKeyError
from spl_provisioner.models import ProvisioningReport, format_amount
from spl_provisioner.utils.keypair_utility import load_keypair
from spl_provisioner.utils.rpc_client import JsonRpcClient
from spl_provisioner.workflow import ProvisioningWorkflow


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="SPL Provisioner - Create, issue and transfer a fungible token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_ENDPOINT           - Ledger JSON-RPC endpoint (default: devnet)
  PAYER_KEYPAIR_PATH     - Payer key file (default: ./keypair.json)
  REQUEST_TIMEOUT        - Per-call deadline in seconds (default: 30)
  COMMITMENT             - processed, confirmed or finalized (default: confirmed)
  AIRDROP_MAX_ATTEMPTS   - Faucet attempts (default: 3)
  AIRDROP_BASE_DELAY     - Backoff base in seconds (default: 1.0)
  CONFIRM_POLL_INTERVAL  - Seconds between status polls (default: 1.0)
  CONFIRM_MAX_POLLS      - Status polls per transaction (default: 30)
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--rpc-url",
        default=None,
        help="Override RPC_ENDPOINT"
    )
    parser.add_argument(
        "--keypair",
        default=None,
        help="Override PAYER_KEYPAIR_PATH"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    return parser


def print_summary(report: ProvisioningReport) -> None:
    """Print the outcome of a run to stdout (and failures to stderr)."""
    if report.succeeded:
        print("Provisioning complete")
        print(f"  Mint:             {report.mint}")
        print(f"  Payer account:    {report.payer_token_account}")
        print(f"  Receiver:         {report.receiver}")
        print(f"  Receiver account: {report.receiver_token_account}")
        print(f"  Payer balance:    {format_amount(report.payer_token_balance or 0, report.decimals)}")
        print(f"  Receiver balance: {format_amount(report.receiver_token_balance or 0, report.decimals)}")
        return

    print(f"Provisioning aborted: {report.error}", file=sys.stderr)
    if report.manual_funding_address:
        print(
            f"Fund this address manually and run again: {report.manual_funding_address}",
            file=sys.stderr,
        )


async def main(argv: list[str] | None = None) -> int:
    """Main entry point for the provisioner.

    Returns:
        Process exit code: 0 when the workflow reached DONE, 1 otherwise
    """
    args: argparse.Namespace = build_parser().parse_args(argv)

    setup_logging(args.log_level)
    logger.info("=== SPL Provisioner Starting ===")
    logger.info("Loading configuration from environment...")

    try:
        config: ProvisionerConfig = ProvisionerConfig.from_env().with_overrides(
            rpc_url=args.rpc_url,
            payer_keypair_path=args.keypair,
        )
        config.log_config()
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RPC_ENDPOINT: Ledger JSON-RPC endpoint")
        logger.error("  - PAYER_KEYPAIR_PATH: Payer key file")
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        payer: Keypair = load_keypair(config.payer_keypair_path)
    except FileNotFoundError:
        logger.error(f"Keypair file not found: {config.payer_keypair_path}")
        print(f"Keypair file not found: {config.payer_keypair_path}", file=sys.stderr)
        return 1
    except MalformedKeyError as e:
        logger.error(f"Invalid keypair file: {e}")
        print(f"Invalid keypair file: {e}", file=sys.stderr)
        return 1

    logger.info(f"Payer: {payer.pubkey()}")

    rpc = JsonRpcClient(
        config.rpc.rpc_url,
        timeout=config.rpc.request_timeout,
        commitment=config.rpc.commitment,
    )
    workflow = ProvisioningWorkflow(rpc, payer, config)

    try:
        report: ProvisioningReport = await workflow.run()
    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down...")
        return 1

    print_summary(report)
    return 0 if report.succeeded else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
