#!/usr/bin/env python3
"""Tests for the command line interface."""

import json
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import main
from escrow_deployer.models import DeploymentResult, JobState

CREATOR = "0x" + "aa" * 20
RECORDER = "0x" + "bb" * 20
JOB_ARGS = [
    "--job-key", "q1",
    "--creator", CREATOR,
    "--recorder", RECORDER,
    "--correct", "700",
    "--incorrect", "300",
    "--identity", "bot-token",
]


def make_orchestrator() -> MagicMock:
    """Create a mock orchestrator usable as an async context manager."""
    orchestrator = MagicMock()
    orchestrator.__aenter__.return_value = orchestrator
    orchestrator.__aexit__.return_value = False
    return orchestrator


class TestCli:
    """Tests for argument parsing and command dispatch."""

    def test_build_job_for_deploy(self):
        args = main.build_parser().parse_args(["deploy", *JOB_ARGS])
        job = main.build_job(args)

        assert job.state is JobState.PENDING
        assert job.funding_split.total == 1000
        assert job.duration_seconds == 300
        assert job.operation_handle is None

    def test_build_job_for_resume(self):
        args = main.build_parser().parse_args(["resume", *JOB_ARGS, "--handle", "h1"])
        job = main.build_job(args)

        assert job.state is JobState.SUBMITTED
        assert job.operation_handle == "h1"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args([])

    @pytest.mark.asyncio
    async def test_run_deploy_prints_result(self, capsys):
        orchestrator = make_orchestrator()
        orchestrator.resolve_deployment = AsyncMock(return_value=DeploymentResult(
            job_key="q1", state=JobState.RESOLVED, escrow_address="0xESC1"
        ))
        args = main.build_parser().parse_args(["deploy", *JOB_ARGS])

        with patch.object(main.DeployerConfig, "from_env", return_value=MagicMock()), \
                patch.object(main.ResolutionOrchestrator, "from_config", return_value=orchestrator):
            exit_code = await main.run(args)

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["escrow_address"] == "0xESC1"
        assert output["state"] == "Resolved"

    @pytest.mark.asyncio
    async def test_run_failed_result_exit_code(self, capsys):
        orchestrator = make_orchestrator()
        orchestrator.resume_deployment = AsyncMock(return_value=DeploymentResult(
            job_key="q1", state=JobState.FAILED
        ))
        args = main.build_parser().parse_args(["resume", *JOB_ARGS, "--handle", "h1"])

        with patch.object(main.DeployerConfig, "from_env", return_value=MagicMock()), \
                patch.object(main.ResolutionOrchestrator, "from_config", return_value=orchestrator):
            exit_code = await main.run(args)

        assert exit_code == 1
        orchestrator.resume_deployment.assert_awaited_once()
        orchestrator.__aexit__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_scan(self, capsys):
        orchestrator = make_orchestrator()
        orchestrator.find_deployments = AsyncMock(return_value=[])
        args = main.build_parser().parse_args(
            ["scan", "--creator", CREATOR, "--from-block", "100", "--to-block", "200"]
        )

        with patch.object(main.DeployerConfig, "from_env", return_value=MagicMock()), \
                patch.object(main.ResolutionOrchestrator, "from_config", return_value=orchestrator):
            exit_code = await main.run(args)

        assert exit_code == 0
        orchestrator.find_deployments.assert_awaited_once_with(CREATOR, 100, 200)
        orchestrator.__aexit__.assert_awaited_once()
        assert json.loads(capsys.readouterr().out) == []

    def test_main_configuration_error_exits(self):
        with patch.dict(os.environ, {}, clear=True), \
                patch("sys.argv", ["main.py", "deploy", *JOB_ARGS]):
            with pytest.raises(SystemExit) as exc_info:
                main.main()

        assert exc_info.value.code == 1
