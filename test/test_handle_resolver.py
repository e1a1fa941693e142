#!/usr/bin/env python3
"""Unit tests for HandleResolver."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from escrow_deployer.errors import ErrorKind, RelayError, SettlementTimeoutError
from escrow_deployer.handle_resolver import HandleResolver, Settlement
from escrow_deployer.utils.relay_utility import NOT_SETTLED, SettlementStatus

SETTLED = SettlementStatus(settled=True, transaction_id="0xTX1", succeeded=True)


@pytest.fixture
def mock_relay():
    mock = MagicMock()
    mock.get_settlement_status = AsyncMock(return_value=NOT_SETTLED)
    return mock


class TestHandleResolver:
    """Test suite for HandleResolver class."""

    def test_invalid_attempt_budget(self, mock_relay):
        with pytest.raises(ValueError, match="max_attempts"):
            HandleResolver(mock_relay, max_attempts=0)

    @pytest.mark.asyncio
    async def test_settles_on_first_poll(self, mock_relay):
        mock_relay.get_settlement_status.return_value = SETTLED
        resolver = HandleResolver(mock_relay, poll_interval=0)

        settlement = await resolver.resolve("0xh1")

        assert settlement == Settlement(handle="0xh1", transaction_id="0xTX1", attempts=1, succeeded=True)
        mock_relay.get_settlement_status.assert_awaited_once_with("0xh1")

    @pytest.mark.asyncio
    async def test_settles_after_pending_polls(self, mock_relay):
        mock_relay.get_settlement_status.side_effect = [NOT_SETTLED, NOT_SETTLED, SETTLED]
        resolver = HandleResolver(mock_relay, poll_interval=0)

        settlement = await resolver.resolve("0xh1")

        assert settlement.attempts == 3
        assert settlement.transaction_id == "0xTX1"

    @pytest.mark.asyncio
    async def test_timeout_after_exact_attempt_budget(self, mock_relay):
        resolver = HandleResolver(mock_relay, poll_interval=0, max_attempts=7)

        with pytest.raises(SettlementTimeoutError) as exc_info:
            await resolver.resolve("0xh1")

        assert mock_relay.get_settlement_status.await_count == 7
        assert exc_info.value.kind is ErrorKind.SETTLEMENT_TIMEOUT
        assert exc_info.value.attempts == 7
        assert exc_info.value.details["operation_handle"] == "0xh1"

    @pytest.mark.asyncio
    async def test_poll_errors_count_as_not_settled(self, mock_relay):
        mock_relay.get_settlement_status.side_effect = [
            RelayError("HTTP 503"),
            RuntimeError("connection reset"),
            SETTLED,
        ]
        resolver = HandleResolver(mock_relay, poll_interval=0, max_attempts=3)

        settlement = await resolver.resolve("0xh1")

        assert settlement.attempts == 3

    @pytest.mark.asyncio
    async def test_last_error_reported_on_timeout(self, mock_relay):
        mock_relay.get_settlement_status.side_effect = RelayError("HTTP 503")
        resolver = HandleResolver(mock_relay, poll_interval=0, max_attempts=2)

        with pytest.raises(SettlementTimeoutError) as exc_info:
            await resolver.resolve("0xh1")

        assert "HTTP 503" in exc_info.value.details["last_error"]

    @pytest.mark.asyncio
    async def test_slow_poll_times_out_and_continues(self, mock_relay):
        calls = 0

        async def status(handle):
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(10)
            return SETTLED

        mock_relay.get_settlement_status.side_effect = status
        resolver = HandleResolver(mock_relay, poll_interval=0, request_timeout=0.01)

        settlement = await resolver.resolve("0xh1")

        assert settlement.attempts == 2

    @pytest.mark.asyncio
    async def test_settled_without_transaction_id_keeps_polling(self, mock_relay):
        mock_relay.get_settlement_status.side_effect = [
            SettlementStatus(settled=True, transaction_id=None),
            SETTLED,
        ]
        resolver = HandleResolver(mock_relay, poll_interval=0)

        settlement = await resolver.resolve("0xh1")

        assert settlement.attempts == 2

    @pytest.mark.asyncio
    async def test_resolve_is_reentrant(self, mock_relay):
        """A fresh resolve with the same handle starts again from attempt 1."""
        resolver = HandleResolver(mock_relay, poll_interval=0, max_attempts=2)
        with pytest.raises(SettlementTimeoutError):
            await resolver.resolve("0xh1")

        mock_relay.get_settlement_status.return_value = SETTLED
        settlement = await resolver.resolve("0xh1")

        assert settlement.attempts == 1

    @pytest.mark.asyncio
    async def test_sleeps_only_between_attempts(self, mock_relay, monkeypatch):
        sleeps: list[float] = []

        async def fake_sleep(delay):
            sleeps.append(delay)

        monkeypatch.setattr("escrow_deployer.handle_resolver.asyncio.sleep", fake_sleep)
        resolver = HandleResolver(mock_relay, poll_interval=5.0, max_attempts=4)

        with pytest.raises(SettlementTimeoutError):
            await resolver.resolve("0xh1")

        assert sleeps == [5.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_on_attempt_called_before_each_poll(self, mock_relay):
        mock_relay.get_settlement_status.side_effect = [NOT_SETTLED, RelayError("503"), SETTLED]
        resolver = HandleResolver(mock_relay, poll_interval=0)
        attempts: list[int] = []

        await resolver.resolve("0xh1", on_attempt=attempts.append)

        assert attempts == [1, 2, 3]
