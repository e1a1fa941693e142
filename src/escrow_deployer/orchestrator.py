"""
Resolution pipeline for escrow deployments.

The orchestrator takes a job from submission through settlement polling to
the deployed escrow address read from the factory's ContractDeployed event.
It owns the per-job lock, refreshing it between pipeline steps, and turns
every stage error into a Failed job with a typed ErrorKind.
"""

import asyncio
import logging
from dataclasses import dataclass

from web3 import Web3

from .config import DeployerConfig
from .deployment_submitter import DeploymentSubmitter
from .errors import (
    DeploymentError,
    ErrorKind,
    EventNotFoundError,
    LockContentionError,
    LogsUnavailableError,
    SettlementTimeoutError,
)
from .event_decoder import CONTRACT_DEPLOYED_TOPIC, EventDecoder
from .handle_resolver import HandleResolver
from .lock_manager import JobLockManager, Lock
from .models import DeploymentEvent, DeploymentJob, DeploymentResult, JobState
from .provider_pool import ProviderPool
from .utils.contract_utility import ContractUtility
from .utils.relay_utility import AccountKitRelay

# Get logger for this module
logger = logging.getLogger(__name__)

# Error kind for an unclassified exception, by the stage it escaped from
_STAGE_ERROR_KINDS: dict[JobState, ErrorKind] = {
    JobState.PENDING: ErrorKind.SUBMISSION_FAILED,
    JobState.SUBMITTED: ErrorKind.SUBMISSION_FAILED,
    JobState.AWAITING_SETTLEMENT: ErrorKind.SETTLEMENT_TIMEOUT,
    JobState.RESOLVING_LOGS: ErrorKind.LOGS_UNAVAILABLE,
}


@dataclass(slots=True)
class _Diagnostics:
    provider_name: str | None = None
    providers_tried: tuple[str, ...] = ()
    event: DeploymentEvent | None = None


class ResolutionOrchestrator:
    """
    Drives a DeploymentJob from submission to a resolved escrow address.

    Each call to resolve_deployment is one unit of work: it holds the job's
    lock for its whole duration, never submits more than once, and always
    returns a DeploymentResult rather than raising stage errors.
    """

    LOCK_OPERATION: str = "blockchain_submit"

    def __init__(
        self,
        lock_manager: JobLockManager,
        submitter: DeploymentSubmitter,
        handle_resolver: HandleResolver,
        provider_pool: ProviderPool,
        decoder: EventDecoder,
        contract_type_tag: str = "QuizEscrow",
        log_retry_attempts: int = 3,
        log_retry_delay: float = 5.0,
        skip_creator_validation: bool = False
    ) -> None:
        """
        Initialize the orchestrator from its components.

        Args:
            lock_manager: Gates entry per job key
            submitter: Submits the deployment through the relay
            handle_resolver: Polls the operation handle until it settles
            provider_pool: Fetches logs of the settled transaction
            decoder: Decodes and validates the deployment event
            contract_type_tag: Contract type expected in the event
            log_retry_attempts: Outer attempts of the log stage
            log_retry_delay: Seconds between outer attempts
            skip_creator_validation: Skip the creator check for every job
        """
        if log_retry_attempts <= 0:
            raise ValueError(f"log_retry_attempts must be positive, got {log_retry_attempts}")

        self.lock_manager = lock_manager
        self.submitter = submitter
        self.handle_resolver = handle_resolver
        self.provider_pool = provider_pool
        self.decoder = decoder
        self.contract_type_tag = contract_type_tag
        self.log_retry_attempts = log_retry_attempts
        self.log_retry_delay = log_retry_delay
        self.skip_creator_validation = skip_creator_validation
        self._cancel_events: dict[str, asyncio.Event] = {}

    @classmethod
    def from_config(cls, config: DeployerConfig) -> "ResolutionOrchestrator":
        """Wire up the production components from configuration."""
        config.log_config()
        res = config.resolution

        contract_util = ContractUtility()
        pool = ProviderPool(config.providers, request_timeout=res.provider_timeout)
        relay = AccountKitRelay(
            base_url=config.relay.base_url,
            api_key=config.relay.api_key,
            chain_id=config.relay.chain_id,
            schema_version=config.relay.schema_version,
            timeout=res.request_timeout,
            fee_rpc_url=pool.providers[0].endpoint_uri,
            handler_address=config.factory.handler_address,
            fixed_deployment_fee=config.factory.fixed_deployment_fee,
            contract_util=contract_util,
        )

        return cls(
            lock_manager=JobLockManager(ttl=res.lock_ttl),
            submitter=DeploymentSubmitter(
                relay=relay,
                contract_util=contract_util,
                factory_address=config.factory.factory_address,
                contract_type_tag=config.factory.contract_type_tag,
                fee_retry_count=res.fee_retry_count,
                request_timeout=res.request_timeout,
            ),
            handle_resolver=HandleResolver(
                relay,
                poll_interval=res.poll_interval,
                max_attempts=res.poll_attempts,
                request_timeout=res.request_timeout,
            ),
            provider_pool=pool,
            decoder=EventDecoder(config.factory.factory_address),
            contract_type_tag=config.factory.contract_type_tag,
            log_retry_attempts=res.log_retry_attempts,
            log_retry_delay=res.log_retry_delay,
            skip_creator_validation=res.skip_creator_validation,
        )

    async def close(self) -> None:
        """Close the provider clients."""
        await self.provider_pool.close()

    async def __aenter__(self) -> "ResolutionOrchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def resolve_deployment(self, job: DeploymentJob) -> DeploymentResult:
        """
        Deploy an escrow for a new job and wait for its address.

        Args:
            job: A job in Pending state

        Returns:
            DeploymentResult in Resolved or Failed state

        Raises:
            ValueError: If the job is not Pending
            asyncio.CancelledError: If the calling task is cancelled; the job
                is left Failed{Cancelled} and its lock released
        """
        if job.state is not JobState.PENDING or job.operation_handle is not None:
            raise ValueError(
                f"Job {job.job_key} is {job.state.value}; only Pending jobs can be deployed"
            )
        return await self._run(job)

    async def resume_deployment(self, job: DeploymentJob) -> DeploymentResult:
        """
        Resume a job that already has an operation handle, without resubmitting.

        Raises:
            ValueError: If the job has no handle or is past settlement
        """
        if job.operation_handle is None:
            raise ValueError(f"Job {job.job_key} has no operation handle to resume")
        if job.state not in (JobState.SUBMITTED, JobState.AWAITING_SETTLEMENT):
            raise ValueError(
                f"Job {job.job_key} is {job.state.value}; only Submitted or "
                "AwaitingSettlement jobs can be resumed"
            )
        logger.info(f"Resuming job {job.job_key} from handle {job.operation_handle}")
        return await self._run(job)

    def cancel(self, job_key: str) -> bool:
        """
        Stop waiting for an in-flight resolution.

        The relay operation, if already submitted, is not undone and may
        still settle on-chain.

        Returns:
            True if a resolution for the job was in flight
        """
        cancel_event = self._cancel_events.get(job_key)
        if cancel_event is None:
            return False
        logger.info(f"Cancellation requested for job {job_key}")
        cancel_event.set()
        return True

    async def _run(self, job: DeploymentJob) -> DeploymentResult:
        diagnostics = _Diagnostics()

        with self.lock_manager.hold(job.job_key, self.LOCK_OPERATION) as lock:
            if lock is None:
                logger.warning(f"Job {job.job_key} is already being resolved")
                job.fail(
                    ErrorKind.LOCK_CONTENTION,
                    f"A resolution for job {job.job_key} is already in flight",
                )
                return DeploymentResult.from_job(job)

            cancel_event = asyncio.Event()
            self._cancel_events[job.job_key] = cancel_event
            pipeline = asyncio.create_task(self._pipeline(job, lock, diagnostics))
            cancel_waiter = asyncio.create_task(cancel_event.wait())

            try:
                done, _ = await asyncio.wait(
                    {pipeline, cancel_waiter},
                    return_when=asyncio.FIRST_COMPLETED
                )
                if pipeline in done:
                    pipeline.result()
                else:
                    pipeline.cancel()
                    await asyncio.gather(pipeline, return_exceptions=True)
                    if not job.state.is_terminal:
                        logger.warning(f"✗ Job {job.job_key} cancelled in {job.state.value}")
                        job.fail(ErrorKind.CANCELLED, "Resolution cancelled by caller")
            except asyncio.CancelledError:
                pipeline.cancel()
                await asyncio.gather(pipeline, return_exceptions=True)
                if not job.state.is_terminal:
                    job.fail(ErrorKind.CANCELLED, "Resolution task cancelled")
                logger.warning(f"✗ Job {job.job_key} cancelled")
                raise
            finally:
                cancel_waiter.cancel()
                if self._cancel_events.get(job.job_key) is cancel_event:
                    del self._cancel_events[job.job_key]

        return DeploymentResult.from_job(
            job,
            provider_name=diagnostics.provider_name,
            providers_tried=diagnostics.providers_tried,
            event=diagnostics.event,
        )

    def _keep_lock(self, job: DeploymentJob, lock: Lock) -> None:
        """
        Refresh the job lock before the next pipeline step.

        Raises:
            LockContentionError: If the lock was lost before submission
        """
        if self.lock_manager.refresh(lock):
            return
        if job.operation_handle is None:
            raise LockContentionError(
                f"Lock for job {job.job_key} expired before submission",
                lock_key=lock.key,
            )
        logger.warning(
            f"Lock {lock.key} expired while job {job.job_key} was in {job.state.value}; "
            "another resolution may start"
        )

    async def _pipeline(self, job: DeploymentJob, lock: Lock, diagnostics: _Diagnostics) -> None:
        try:
            if job.operation_handle is None:
                self._keep_lock(job, lock)
                job.count_attempt("submit")
                job.operation_handle = await self.submitter.submit(job)
                job.transition(JobState.SUBMITTED)

            if job.state is JobState.SUBMITTED:
                job.transition(JobState.AWAITING_SETTLEMENT)

            settlement = await self.handle_resolver.resolve(
                job.operation_handle,
                on_attempt=lambda _: self._keep_lock(job, lock),
            )
            job.attempt_counters["settlement"] = settlement.attempts
            job.settled_transaction_id = settlement.transaction_id
            job.transition(JobState.RESOLVING_LOGS)

            event = await self._resolve_logs(job, lock, diagnostics)
            diagnostics.event = event
            job.escrow_address = event.deployed_address
            job.transition(JobState.RESOLVED)
            logger.info(f"✓ Job {job.job_key} resolved to escrow {job.escrow_address}")

        except SettlementTimeoutError as e:
            job.attempt_counters["settlement"] = e.attempts
            self._fail(job, e)
        except DeploymentError as e:
            self._fail(job, e)
        except Exception as e:
            kind = _STAGE_ERROR_KINDS.get(job.state, ErrorKind.LOGS_UNAVAILABLE)
            logger.error(
                f"Unexpected {type(e).__name__} in {job.state.value} for job {job.job_key}: {e}",
                exc_info=True
            )
            job.fail(kind, f"{type(e).__name__}: {e}")

    def _fail(self, job: DeploymentJob, error: DeploymentError) -> None:
        logger.error(f"✗ Job {job.job_key} failed in {job.state.value}: {error.kind.value}: {error}")
        job.fail(error.kind, str(error))

    async def _resolve_logs(
        self,
        job: DeploymentJob,
        lock: Lock,
        diagnostics: _Diagnostics
    ) -> DeploymentEvent:
        """
        Fetch, decode and validate the deployment event.

        Missing logs and a missing event are retried because providers may
        lag behind settlement. A validation mismatch is final.
        """
        skip_creator = self.skip_creator_validation or job.skip_creator_validation
        last_error: DeploymentError | None = None

        for attempt in range(1, self.log_retry_attempts + 1):
            self._keep_lock(job, lock)
            job.count_attempt("logs")
            try:
                fetched = await self.provider_pool.fetch_logs(job.settled_transaction_id)
                diagnostics.provider_name = fetched.provider_name
                diagnostics.providers_tried = fetched.providers_tried

                event = self.decoder.decode(fetched.logs, self.contract_type_tag)
                if event is None:
                    raise EventNotFoundError(
                        f"No {self.contract_type_tag} deployment event in "
                        f"{job.settled_transaction_id} ({len(fetched.logs)} logs "
                        f"from {fetched.provider_name})",
                        transaction_id=job.settled_transaction_id,
                        provider_name=fetched.provider_name,
                    )

                self.decoder.validate(event, job, self.contract_type_tag, skip_creator)
                return event

            except (LogsUnavailableError, EventNotFoundError) as e:
                last_error = e
                if isinstance(e, LogsUnavailableError):
                    diagnostics.provider_name = None
                    diagnostics.providers_tried = tuple(e.details["providers_tried"])
                logger.warning(
                    f"Log resolution attempt {attempt}/{self.log_retry_attempts} "
                    f"for job {job.job_key} failed: {e}"
                )
                if attempt < self.log_retry_attempts:
                    await asyncio.sleep(self.log_retry_delay)

        raise last_error

    async def find_deployments(
        self,
        creator_address: str,
        from_block: int,
        to_block: int | str = "latest"
    ) -> list[DeploymentEvent]:
        """
        List every deployment the factory recorded for a creator in a block range.

        Used to audit for duplicate escrows or to recover an address when the
        operation handle was lost.

        Raises:
            LogsUnavailableError: If every provider failed
        """
        if not Web3.is_address(creator_address):
            raise ValueError(f"Invalid creator address: {creator_address!r}")
        creator_topic = "0x" + "0" * 24 + creator_address[2:].lower()
        fetched = await self.provider_pool.fetch_logs_in_range(
            self.decoder.factory_address,
            from_block,
            to_block,
            topics=[CONTRACT_DEPLOYED_TOPIC.to_0x_hex(), creator_topic],
        )
        events = self.decoder.decode_all(fetched.logs, self.contract_type_tag)
        logger.info(
            f"Found {len(events)} deployments for {creator_address} in "
            f"[{from_block}, {to_block}] via {fetched.provider_name}"
        )
        return events
