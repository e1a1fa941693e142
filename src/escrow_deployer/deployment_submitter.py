#!/usr/bin/env python3
"""Deployment submission for the escrow deployer.

This module builds the MotherFactory deployment call for a job and submits it
through the account-abstraction relay, returning the relay's operation
handle.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol

from web3 import Web3

from .errors import SubmissionFailedError
from .models import DeploymentJob

if TYPE_CHECKING:
    from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class DeploymentRelay(Protocol):
    async def get_current_deployment_fee(self) -> int: ...

    async def execute_as(self, identity: str, target: str, call_data: str, value: int) -> str: ...


class DeploymentSubmitter:
    """Submits escrow deployments to the MotherFactory through the relay.

    Never retries the submission itself. The fee read is side-effect free
    and is retried transparently.
    """

    def __init__(
        self,
        relay: DeploymentRelay,
        contract_util: "ContractUtility",
        factory_address: str,
        contract_type_tag: str = "QuizEscrow",
        fee_retry_count: int = 3,
        request_timeout: float = 30.0
    ) -> None:
        """
        Initialize the DeploymentSubmitter.

        Args:
            relay: Relay used for the fee read and the submission
            contract_util: Utility for call-data encoding
            factory_address: Address of the MotherFactory contract
            contract_type_tag: Contract type passed to the factory
            fee_retry_count: Attempts for the fee read
            request_timeout: Timeout in seconds for each relay call
        """
        self.relay = relay
        self.contract_util = contract_util
        self.factory_address: str = Web3.to_checksum_address(factory_address)
        self.contract_type_tag = contract_type_tag
        self.fee_retry_count = fee_retry_count
        self.request_timeout = request_timeout

        logger.info(f"DeploymentSubmitter initialized for {contract_type_tag} via {self.factory_address}")

    async def get_deployment_fee(self) -> int:
        """
        Query the current deployment fee, retrying transient failures.

        Raises:
            SubmissionFailedError: If every attempt fails
        """
        last_error: Exception | None = None
        for attempt in range(1, self.fee_retry_count + 1):
            try:
                fee = await asyncio.wait_for(
                    self.relay.get_current_deployment_fee(),
                    timeout=self.request_timeout
                )
            except Exception as e:
                last_error = e
                logger.warning(f"Fee read attempt {attempt}/{self.fee_retry_count} failed: {e}")
                continue
            if fee < 0:
                raise SubmissionFailedError(f"Relay reported a negative deployment fee: {fee}")
            return fee

        raise SubmissionFailedError(
            f"Could not read deployment fee after {self.fee_retry_count} attempts: {last_error}",
            attempts=self.fee_retry_count,
        )

    def build_call_data(self, job: DeploymentJob) -> str:
        """Encode deployContract(contractType, params) for the job."""
        params = self.contract_util.encode_escrow_params(
            creator=job.creator_address,
            authorized_recorder=job.authorized_recorder_address,
            duration_seconds=job.duration_seconds,
            correct_reward=job.funding_split.correct,
            incorrect_reward=job.funding_split.incorrect,
        )
        return self.contract_util.encode_deploy_call(self.contract_type_tag, params)

    async def submit(self, job: DeploymentJob) -> str:
        """
        Submit the deployment for a job.

        Args:
            job: The job to deploy an escrow for

        Returns:
            The relay-issued operation handle, verbatim

        Raises:
            SubmissionFailedError: If the fee read, encoding or relay call fails
        """
        fee = await self.get_deployment_fee()
        total_value = job.funding_split.total + fee

        logger.info(f"Submitting {self.contract_type_tag} deployment for job {job.job_key}")
        logger.info(f"  Creator: {job.creator_address}")
        logger.info(f"  Funding: {job.funding_split.total} wei + fee {fee} wei = {total_value} wei")

        try:
            call_data = self.build_call_data(job)
        except Exception as e:
            raise SubmissionFailedError(f"Failed to encode deployment call: {e}") from e

        try:
            handle = await asyncio.wait_for(
                self.relay.execute_as(
                    job.relay_identity,
                    self.factory_address,
                    call_data,
                    total_value
                ),
                timeout=self.request_timeout
            )
        except asyncio.TimeoutError as e:
            raise SubmissionFailedError(
                f"Relay submission timed out after {self.request_timeout}s; "
                "the operation may or may not have been accepted"
            ) from e
        except Exception as e:
            logger.error(f"✗ Relay rejected deployment for job {job.job_key}: {e}")
            raise SubmissionFailedError(f"Relay submission failed: {e}") from e

        logger.info(f"✓ Deployment for job {job.job_key} submitted, handle {handle}")
        return handle
