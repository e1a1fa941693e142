"""
Prioritized pool of blockchain data providers.

Every query is tried against the providers in ascending priority order and
the first non-error answer wins. An empty log set is an answer, not a
failure. The pool never caches.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from web3 import AsyncWeb3, Web3
from web3.providers import AsyncHTTPProvider

from .errors import LogsUnavailableError
from .models import ProviderConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class FetchedLogs:
    """Logs returned by one provider.

    Attributes:
        logs: Raw log entries, in the order the provider returned them
        provider_name: Name of the provider that answered
        providers_tried: Providers queried, in order, including the one that answered
    """
    logs: list[Any]
    provider_name: str
    providers_tried: tuple[str, ...]


def default_client_factory(provider: ProviderConfig) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(provider.endpoint_uri))


class ProviderPool:
    """
    Read-only provider list with priority fallback.

    The provider list is fixed at construction and safe for concurrent use.
    Clients are opened eagerly; close the pool, or use it as an async context
    manager, to release their HTTP sessions.
    """

    def __init__(
        self,
        providers: Sequence[ProviderConfig],
        request_timeout: float = 15.0,
        client_factory: Callable[[ProviderConfig], AsyncWeb3] = default_client_factory
    ):
        """
        Initialize the provider pool.

        Args:
            providers: Provider configurations (at least one)
            request_timeout: Timeout in seconds for each provider call
            client_factory: Builds the web3 client for a provider

        Raises:
            ValueError: If no provider is configured
        """
        if not providers:
            raise ValueError("ProviderPool requires at least one provider")

        self.providers: tuple[ProviderConfig, ...] = tuple(
            sorted(providers, key=lambda p: p.priority)
        )
        self.request_timeout = request_timeout
        self._clients: dict[str, AsyncWeb3] = {
            provider.name: client_factory(provider) for provider in self.providers
        }

        logger.info(
            f"ProviderPool initialized with {len(self.providers)} providers: "
            f"{', '.join(p.name for p in self.providers)}"
        )

    async def _first_success(
        self,
        query: str,
        call: Callable[[AsyncWeb3], Awaitable[T]]
    ) -> tuple[T, str, tuple[str, ...]]:
        """Run call against each provider in order until one succeeds."""
        failures: list[tuple[str, str]] = []
        tried: list[str] = []

        for provider in self.providers:
            tried.append(provider.name)
            try:
                result = await asyncio.wait_for(
                    call(self._clients[provider.name]),
                    timeout=self.request_timeout
                )
            except asyncio.TimeoutError:
                reason = f"timed out after {self.request_timeout}s"
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
            else:
                if failures:
                    logger.info(f"Provider {provider.name} answered {query} after {len(failures)} failures")
                return result, provider.name, tuple(tried)

            logger.warning(f"Provider {provider.name} failed for {query}: {reason}")
            failures.append((provider.name, reason))

        raise LogsUnavailableError(query, failures)

    async def fetch_logs(self, transaction_id: str) -> FetchedLogs:
        """
        Fetch the logs of a settled transaction from its receipt.

        Args:
            transaction_id: Hash of the settled transaction

        Returns:
            FetchedLogs from the first provider that answered

        Raises:
            LogsUnavailableError: If every provider failed
        """
        async def get_receipt_logs(w3: AsyncWeb3) -> list[Any]:
            receipt = await w3.eth.get_transaction_receipt(transaction_id)
            return list(receipt["logs"])

        logs, provider_name, tried = await self._first_success(
            f"receipt {transaction_id}", get_receipt_logs
        )
        logger.debug(f"Provider {provider_name} returned {len(logs)} logs for {transaction_id}")
        return FetchedLogs(logs=logs, provider_name=provider_name, providers_tried=tried)

    async def fetch_logs_in_range(
        self,
        address: str,
        from_block: int,
        to_block: int | str = "latest",
        topics: list[Any] | None = None
    ) -> FetchedLogs:
        """
        Fetch logs emitted by a contract within a block range.

        Args:
            address: Emitting contract address
            from_block: First block, inclusive
            to_block: Last block, inclusive, or "latest"
            topics: Optional topic filter

        Raises:
            LogsUnavailableError: If every provider failed
        """
        filter_params: dict[str, Any] = {
            "address": Web3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        if topics:
            filter_params["topics"] = topics

        async def get_logs(w3: AsyncWeb3) -> list[Any]:
            return list(await w3.eth.get_logs(filter_params))

        logs, provider_name, tried = await self._first_success(
            f"logs {address} [{from_block}, {to_block}]", get_logs
        )
        return FetchedLogs(logs=logs, provider_name=provider_name, providers_tried=tried)

    async def close(self) -> None:
        """Close the HTTP sessions of every provider client."""
        for name, client in self._clients.items():
            try:
                await client.provider.disconnect()
            except Exception as e:
                logger.warning(f"Failed to close provider {name}: {e}")
        logger.debug(f"Closed {len(self._clients)} provider clients")

    async def __aenter__(self) -> "ProviderPool":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
