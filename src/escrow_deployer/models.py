#!/usr/bin/env python3
"""Data models for the escrow deployment pipeline.

This module provides the job record mutated by the orchestrator, the
immutable deployment event produced by the decoder, and the result object
handed back to callers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from web3 import Web3

from .errors import ErrorKind


class JobState(Enum):
    """Lifecycle of a DeploymentJob. States only ever move forward."""
    PENDING = "Pending"
    SUBMITTED = "Submitted"
    AWAITING_SETTLEMENT = "AwaitingSettlement"
    RESOLVING_LOGS = "ResolvingLogs"
    RESOLVED = "Resolved"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.RESOLVED, JobState.FAILED)


_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.SUBMITTED, JobState.FAILED}),
    JobState.SUBMITTED: frozenset({JobState.AWAITING_SETTLEMENT, JobState.FAILED}),
    JobState.AWAITING_SETTLEMENT: frozenset({JobState.RESOLVING_LOGS, JobState.FAILED}),
    JobState.RESOLVING_LOGS: frozenset({JobState.RESOLVED, JobState.FAILED}),
    JobState.RESOLVED: frozenset(),
    JobState.FAILED: frozenset(),
}


def _checksum(address: str, label: str) -> str:
    if not address or not Web3.is_address(address):
        raise ValueError(f"Invalid {label}: {address!r}")
    return Web3.to_checksum_address(address)


@dataclass(frozen=True, slots=True)
class FundingSplit:
    """Reward pools funded at deployment time, in wei.

    Attributes:
        correct: Pool paid out for correct answers
        incorrect: Pool paid out for incorrect answers
    """

    correct: int
    incorrect: int

    def __post_init__(self) -> None:
        if self.correct < 0 or self.incorrect < 0:
            raise ValueError(
                f"Funding amounts must be non-negative, got "
                f"correct={self.correct}, incorrect={self.incorrect}"
            )

    @property
    def total(self) -> int:
        return self.correct + self.incorrect


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """A blockchain data endpoint. Lower priority values are tried first."""

    name: str
    endpoint_uri: str
    priority: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Provider name is required")
        if not self.endpoint_uri:
            raise ValueError(f"Provider {self.name} has no endpoint URI")


@dataclass(frozen=True, slots=True)
class DeploymentEvent:
    """A decoded ContractDeployed log entry.

    Produced only by the EventDecoder and never mutated afterwards.

    Attributes:
        creator_address: Creator recorded by the factory
        contract_type_tag: Contract type, or the raw topic hash when it does
            not match the expected tag
        deployed_address: Address of the newly deployed contract
        handler_address: Handler contract that performed the deployment
        deployment_fee: Fee charged by the handler, in wei
        block_number: Block containing the log
        transaction_id: Transaction that emitted the log
        log_index: Position of the log in its block
    """

    creator_address: str
    contract_type_tag: str
    deployed_address: str
    handler_address: str
    deployment_fee: int
    block_number: int
    transaction_id: str
    log_index: int

    def __str__(self) -> str:
        return (
            f"DeploymentEvent(type={self.contract_type_tag}, "
            f"address={self.deployed_address}, "
            f"creator={self.creator_address[:10]}..., "
            f"block={self.block_number}, log={self.log_index})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "creator_address": self.creator_address,
            "contract_type_tag": self.contract_type_tag,
            "deployed_address": self.deployed_address,
            "handler_address": self.handler_address,
            "deployment_fee": self.deployment_fee,
            "block_number": self.block_number,
            "transaction_id": self.transaction_id,
            "log_index": self.log_index,
        }


@dataclass(slots=True)
class DeploymentJob:
    """One logical deployment request.

    The ResolutionOrchestrator is the only component that mutates a job.

    Attributes:
        job_key: Identifier of the logical unit of work, used as the lock key
        creator_address: Address the escrow is created for
        authorized_recorder_address: Address allowed to record results
        funding_split: Reward pools sent along with the deployment
        duration_seconds: Escrow lifetime, passed through to the constructor
        relay_identity: Identity the relay executes the operation as
        skip_creator_validation: Explicit opt-out of the creator check
    """

    job_key: str
    creator_address: str
    authorized_recorder_address: str
    funding_split: FundingSplit
    duration_seconds: int
    relay_identity: str
    skip_creator_validation: bool = False
    state: JobState = JobState.PENDING
    operation_handle: str | None = None
    settled_transaction_id: str | None = None
    escrow_address: str | None = None
    attempt_counters: dict[str, int] = field(default_factory=dict)
    last_error: ErrorKind | None = None
    error_detail: str | None = None

    def __post_init__(self) -> None:
        if not self.job_key:
            raise ValueError("Job key is required")
        if not self.relay_identity:
            raise ValueError("Relay identity is required")
        if self.duration_seconds <= 0:
            raise ValueError(f"Duration must be positive, got {self.duration_seconds}")
        self.creator_address = _checksum(self.creator_address, "creator address")
        self.authorized_recorder_address = _checksum(
            self.authorized_recorder_address, "authorized recorder address"
        )

    def transition(self, new_state: JobState) -> None:
        """Move the job forward. Revisiting or skipping states is an error."""
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid transition for job {self.job_key}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def count_attempt(self, stage: str) -> int:
        self.attempt_counters[stage] = self.attempt_counters.get(stage, 0) + 1
        return self.attempt_counters[stage]

    def fail(self, kind: ErrorKind, detail: str) -> None:
        self.transition(JobState.FAILED)
        self.last_error = kind
        self.error_detail = detail

    def resumed(self) -> "DeploymentJob":
        """Create a fresh job that resumes polling this job's operation handle.

        Used after a SettlementTimeout: the operation may still settle, and a
        new resolution must not submit it a second time.
        """
        if self.operation_handle is None:
            raise ValueError(f"Job {self.job_key} has no operation handle to resume")
        return DeploymentJob(
            job_key=self.job_key,
            creator_address=self.creator_address,
            authorized_recorder_address=self.authorized_recorder_address,
            funding_split=self.funding_split,
            duration_seconds=self.duration_seconds,
            relay_identity=self.relay_identity,
            skip_creator_validation=self.skip_creator_validation,
            state=JobState.SUBMITTED,
            operation_handle=self.operation_handle,
        )


@dataclass(frozen=True, slots=True)
class DeploymentResult:
    """Outcome of one resolve_deployment call.

    Carries enough detail (handle, transaction id, providers, attempts) to
    investigate a failure without re-running the pipeline.
    """

    job_key: str
    state: JobState
    escrow_address: str | None = None
    error_kind: ErrorKind | None = None
    detail: str | None = None
    operation_handle: str | None = None
    settled_transaction_id: str | None = None
    provider_name: str | None = None
    providers_tried: tuple[str, ...] = ()
    attempt_counters: dict[str, int] = field(default_factory=dict)
    event: DeploymentEvent | None = None

    @property
    def ok(self) -> bool:
        return self.state is JobState.RESOLVED

    @property
    def retryable(self) -> bool:
        return self.error_kind is not None and self.error_kind.retryable

    @classmethod
    def from_job(cls, job: DeploymentJob, **extra: Any) -> "DeploymentResult":
        return cls(
            job_key=job.job_key,
            state=job.state,
            escrow_address=job.escrow_address,
            error_kind=job.last_error,
            detail=job.error_detail,
            operation_handle=job.operation_handle,
            settled_transaction_id=job.settled_transaction_id,
            attempt_counters=dict(job.attempt_counters),
            **extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "job_key": self.job_key,
            "state": self.state.value,
            "escrow_address": self.escrow_address,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "detail": self.detail,
            "operation_handle": self.operation_handle,
            "settled_transaction_id": self.settled_transaction_id,
            "provider_name": self.provider_name,
            "providers_tried": list(self.providers_tried),
            "attempt_counters": dict(self.attempt_counters),
            "event": self.event.to_dict() if self.event else None,
        }
