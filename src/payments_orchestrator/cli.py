#!/usr/bin/env python3
"""Command-line interface for operating the payment processors.

Usage:
    python -m payments_orchestrator.cli check-config
    python -m payments_orchestrator.cli check-config --processor stripe
    python -m payments_orchestrator.cli lookup --processor conekta --id ord_2tUx9v6bRbTaYJhSe
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .config import ENV_VARS, EnvironmentCredentialSource
from .exceptions import ConfigurationError, NotFound, PaymentError
from .logging_config import configure_logging
from .services import PaymentOrchestrator

logger = logging.getLogger(__name__)


def check_config(processor_ids: List[str], source: Optional[EnvironmentCredentialSource] = None) -> int:
    """Validate configured credentials and print a masked summary.

    Returns:
        Exit code: 0 when every processor is configured, 1 when some are
        missing, 2 when a missing key is fatal (production).
    """
    source = source or EnvironmentCredentialSource()
    summary: Dict[str, Any] = {"environment": source.environment, "processors": {}}
    exit_code = 0

    for processor_id in processor_ids:
        try:
            configured = source.check(processor_id)
        except ConfigurationError as e:
            logger.error(f"Fatal configuration error: {e.message}")
            return 2
        entry: Dict[str, Any] = {"configured": configured}
        if configured:
            credentials = source.get_credentials(processor_id)
            entry.update({
                "private_key": credentials.masked_private_key,
                "public_key_configured": credentials.public_key is not None,
                "environment_class": credentials.environment_class.value,
            })
        else:
            exit_code = 1
        summary["processors"][processor_id] = entry

    print(json.dumps(summary, indent=2))
    return exit_code


async def lookup_async(processor_id: str, external_transaction_id: str, include_raw: bool = False) -> int:
    """Look up one charge and print it as JSON.

    Returns:
        Exit code: 0 when found, 1 when not found, 2 on any other failure.
    """
    try:
        orchestrator = PaymentOrchestrator.from_credential_source(
            EnvironmentCredentialSource(), processor_ids=[processor_id]
        )
    except ConfigurationError as e:
        logger.error(e.message)
        return 2

    try:
        result = await orchestrator.lookup_charge(processor_id, external_transaction_id)
    except NotFound as e:
        logger.error(e.message)
        return 1
    except PaymentError as e:
        logger.error(f"Lookup failed: {e.message}")
        return 2
    finally:
        await orchestrator.aclose()

    exclude = None if include_raw else {"raw"}
    print(result.model_dump_json(indent=2, exclude=exclude))
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="payments-orchestrator",
        description="Operational tools for the Conekta and Stripe payment processors.",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    check_parser = subparsers.add_parser(
        "check-config",
        help="Validate processor credentials from the environment",
    )
    check_parser.add_argument(
        "--processor", "-p",
        choices=sorted(ENV_VARS),
        action="append",
        help="Processor to check (repeatable, default: all)",
    )

    lookup_parser = subparsers.add_parser(
        "lookup",
        help="Fetch the current state of a charge",
    )
    lookup_parser.add_argument(
        "--processor", "-p",
        choices=sorted(ENV_VARS),
        required=True,
        help="Processor holding the charge",
    )
    lookup_parser.add_argument(
        "--id",
        dest="transaction_id",
        required=True,
        help="Processor transaction id (Conekta order id or Stripe PaymentIntent id)",
    )
    lookup_parser.add_argument(
        "--raw",
        action="store_true",
        help="Include the raw processor payload",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    configure_logging(logging.DEBUG if parsed_args.verbose else logging.INFO)

    if parsed_args.command == "check-config":
        return check_config(parsed_args.processor or sorted(ENV_VARS))

    if parsed_args.command == "lookup":
        return asyncio.run(lookup_async(parsed_args.processor, parsed_args.transaction_id, parsed_args.raw))

    return 0


if __name__ == "__main__":
    sys.exit(main())
