#!/usr/bin/env python3
"""Entry point for the escrow deployer.

This module provides the command line interface for deploying a job's
escrow, resuming a deployment from its operation handle, and scanning the
factory for a creator's past deployments.
"""

import argparse
import asyncio
import json
import logging
import os
import sys


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

from escrow_deployer.config import DeployerConfig
from escrow_deployer.models import DeploymentJob, FundingSplit, JobState
from escrow_deployer.orchestrator import ResolutionOrchestrator


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Escrow Deployer - deploy per-job escrows through the account-abstraction relay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RELAY_BASE_URL          - Account-abstraction relay base URL
  RELAY_API_KEY           - Relay API key (required)
  RELAY_IDENTITY          - Identity the relay executes as (or --identity)
  MOTHER_FACTORY_ADDRESS  - Factory contract (required)
  QUIZ_HANDLER_ADDRESS    - Handler contract exposing DEPLOYMENT_FEE()
  DEPLOYMENT_FEE_WEI      - Fixed fee override
  PROVIDERS               - Comma-separated name=url provider list
  RPC_URL                 - Primary provider when PROVIDERS is unset
  LOG_LEVEL               - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_job_arguments(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--job-key", required=True, help="Job identifier, used as the lock key")
        sub.add_argument("--creator", required=True, help="Creator address")
        sub.add_argument("--recorder", required=True, help="Address authorized to record results")
        sub.add_argument("--correct", type=int, required=True, help="Correct-answer pool in wei")
        sub.add_argument("--incorrect", type=int, required=True, help="Incorrect-answer pool in wei")
        sub.add_argument("--duration", type=int, default=300, help="Escrow duration in seconds")
        sub.add_argument(
            "--identity",
            default=os.environ.get("RELAY_IDENTITY", ""),
            help="Relay identity (default: RELAY_IDENTITY)"
        )
        sub.add_argument(
            "--skip-creator-validation",
            action="store_true",
            default=False,
            help="Accept a deployment event whose creator differs from --creator"
        )

    deploy = subparsers.add_parser("deploy", help="Deploy an escrow and resolve its address")
    add_job_arguments(deploy)

    resume = subparsers.add_parser("resume", help="Resolve an already-submitted deployment")
    add_job_arguments(resume)
    resume.add_argument("--handle", required=True, help="Operation handle returned at submission")

    scan = subparsers.add_parser("scan", help="List a creator's deployments in a block range")
    scan.add_argument("--creator", required=True, help="Creator address")
    scan.add_argument("--from-block", type=int, required=True, help="First block, inclusive")
    scan.add_argument("--to-block", default="latest", help="Last block, inclusive (default: latest)")

    return parser


def build_job(args: argparse.Namespace) -> DeploymentJob:
    job = DeploymentJob(
        job_key=args.job_key,
        creator_address=args.creator,
        authorized_recorder_address=args.recorder,
        funding_split=FundingSplit(correct=args.correct, incorrect=args.incorrect),
        duration_seconds=args.duration,
        relay_identity=args.identity,
        skip_creator_validation=args.skip_creator_validation,
    )
    if getattr(args, "handle", None):
        job.operation_handle = args.handle
        job.transition(JobState.SUBMITTED)
    return job


async def run(args: argparse.Namespace) -> int:
    config: DeployerConfig = DeployerConfig.from_env()

    async with ResolutionOrchestrator.from_config(config) as orchestrator:
        if args.command == "scan":
            to_block = args.to_block if args.to_block == "latest" else int(args.to_block)
            events = await orchestrator.find_deployments(args.creator, args.from_block, to_block)
            print(json.dumps([event.to_dict() for event in events], indent=2))
            return 0

        job = build_job(args)
        if args.command == "resume":
            result = await orchestrator.resume_deployment(job)
        else:
            result = await orchestrator.resolve_deployment(job)

    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.ok else 1


def main() -> None:
    """Main entry point for the escrow deployer CLI.

    Raises:
        SystemExit: With the command's exit status
    """
    args: argparse.Namespace = build_parser().parse_args()
    setup_logging(args.log_level)

    logger.info(f"=== Escrow Deployer: {args.command} ===")

    try:
        exit_code = asyncio.run(run(args))

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RELAY_API_KEY: Relay API key")
        logger.error("  - MOTHER_FACTORY_ADDRESS: Factory contract")
        logger.error("  - QUIZ_HANDLER_ADDRESS or DEPLOYMENT_FEE_WEI: Deployment fee source")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down...")
        sys.exit(130)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
