#!/usr/bin/env python3
"""Tests for the data models."""

import pytest
from web3 import Web3

from escrow_deployer.errors import ErrorKind
from escrow_deployer.models import DeploymentJob, DeploymentResult, FundingSplit, JobState

CREATOR = "0x" + "aa" * 20
RECORDER = "0x" + "bb" * 20


def make_job(**overrides) -> DeploymentJob:
    fields = {
        "job_key": "q1",
        "creator_address": CREATOR,
        "authorized_recorder_address": RECORDER,
        "funding_split": FundingSplit(correct=2, incorrect=1),
        "duration_seconds": 300,
        "relay_identity": "bot-token",
    }
    fields.update(overrides)
    return DeploymentJob(**fields)


class TestFundingSplit:
    """Tests for FundingSplit."""

    def test_total(self):
        assert FundingSplit(correct=7, incorrect=3).total == 10

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            FundingSplit(correct=-1, incorrect=0)


class TestDeploymentJob:
    """Tests for DeploymentJob."""

    def test_addresses_checksummed(self):
        job = make_job()
        assert job.creator_address == Web3.to_checksum_address(CREATOR)
        assert job.state is JobState.PENDING

    @pytest.mark.parametrize("overrides, message", [
        ({"job_key": ""}, "Job key"),
        ({"relay_identity": ""}, "Relay identity"),
        ({"duration_seconds": 0}, "Duration"),
        ({"creator_address": "0x1234"}, "creator address"),
        ({"authorized_recorder_address": "not-an-address"}, "authorized recorder"),
    ])
    def test_invalid_input(self, overrides, message):
        with pytest.raises(ValueError, match=message):
            make_job(**overrides)

    def test_forward_transitions(self):
        job = make_job()
        for state in (
            JobState.SUBMITTED,
            JobState.AWAITING_SETTLEMENT,
            JobState.RESOLVING_LOGS,
            JobState.RESOLVED,
        ):
            job.transition(state)
        assert job.state.is_terminal

    def test_states_cannot_be_skipped(self):
        job = make_job()
        with pytest.raises(ValueError, match="Invalid transition"):
            job.transition(JobState.RESOLVING_LOGS)

    def test_states_cannot_be_revisited(self):
        job = make_job()
        job.transition(JobState.SUBMITTED)
        job.transition(JobState.AWAITING_SETTLEMENT)
        with pytest.raises(ValueError, match="Invalid transition"):
            job.transition(JobState.SUBMITTED)

    def test_terminal_states_are_final(self):
        job = make_job()
        job.fail(ErrorKind.SUBMISSION_FAILED, "rejected")
        with pytest.raises(ValueError):
            job.fail(ErrorKind.CANCELLED, "again")
        assert job.last_error is ErrorKind.SUBMISSION_FAILED

    def test_count_attempt(self):
        job = make_job()
        assert job.count_attempt("logs") == 1
        assert job.count_attempt("logs") == 2
        assert job.attempt_counters == {"logs": 2}

    def test_resumed_carries_handle(self):
        job = make_job(skip_creator_validation=True)
        job.transition(JobState.SUBMITTED)
        job.operation_handle = "h1"
        job.transition(JobState.AWAITING_SETTLEMENT)
        job.count_attempt("submit")
        job.fail(ErrorKind.SETTLEMENT_TIMEOUT, "gave up")

        resumed = job.resumed()

        assert resumed.state is JobState.SUBMITTED
        assert resumed.operation_handle == "h1"
        assert resumed.attempt_counters == {}
        assert resumed.last_error is None
        assert resumed.skip_creator_validation is True

    def test_resumed_requires_handle(self):
        with pytest.raises(ValueError, match="no operation handle"):
            make_job().resumed()


class TestDeploymentResult:
    """Tests for DeploymentResult."""

    def test_from_failed_job(self):
        job = make_job()
        job.fail(ErrorKind.LOCK_CONTENTION, "busy")

        result = DeploymentResult.from_job(job)

        assert not result.ok
        assert result.retryable
        assert result.to_dict()["error_kind"] == "LockContention"
        assert result.to_dict()["state"] == "Failed"

    @pytest.mark.parametrize("kind, retryable", [
        (ErrorKind.LOCK_CONTENTION, True),
        (ErrorKind.SETTLEMENT_TIMEOUT, True),
        (ErrorKind.SUBMISSION_FAILED, False),
        (ErrorKind.LOGS_UNAVAILABLE, False),
        (ErrorKind.EVENT_NOT_FOUND, False),
        (ErrorKind.VALIDATION_MISMATCH, False),
        (ErrorKind.CANCELLED, False),
    ])
    def test_retryable_kinds(self, kind, retryable):
        result = DeploymentResult(job_key="q1", state=JobState.FAILED, error_kind=kind)
        assert result.retryable is retryable
