#!/usr/bin/env python3
"""Configuration management for the escrow deployer.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .models import ProviderConfig

# Get logger for this module
logger = logging.getLogger(__name__)

# Public Base Sepolia endpoints used when no provider is configured
DEFAULT_PROVIDER_URLS: tuple[str, ...] = (
    "https://sepolia.base.org",
    "https://base-sepolia.blockpi.network/v1/rpc/public",
    "https://base-sepolia-rpc.publicnode.com",
)


def _validate_url(url: str, label: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"Invalid {label} scheme: {parsed.scheme}. Expected http or https")


def _checksummed(address: str, label: str, env_name: str) -> str:
    if not address:
        raise ValueError(f"{label} is required ({env_name})")
    if not Web3.is_address(address):
        raise ValueError(f"Invalid {label}: {address}")
    return Web3.to_checksum_address(address)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Configuration for the account-abstraction relay.

    Attributes:
        base_url: Relay API base URL
        api_key: API key sent as X-API-KEY
        chain_id: Chain the relay executes operations on
        schema_version: Settlement-status response schema
    """

    base_url: str
    api_key: str
    chain_id: int = 84532
    schema_version: str = "erc4337"

    SUPPORTED_SCHEMAS: ClassVar[set[str]] = {"erc4337", "flat"}

    def __post_init__(self) -> None:
        """Validate relay configuration."""
        if not self.base_url:
            raise ValueError("Relay base URL is required (RELAY_BASE_URL)")
        _validate_url(self.base_url, "relay URL")

        if not self.api_key:
            raise ValueError("Relay API key is required (RELAY_API_KEY)")

        if self.chain_id <= 0:
            raise ValueError(f"Chain ID must be positive, got {self.chain_id}")

        if self.schema_version not in self.SUPPORTED_SCHEMAS:
            raise ValueError(
                f"Unsupported relay schema: {self.schema_version}. "
                f"Supported schemas: {', '.join(sorted(self.SUPPORTED_SCHEMAS))}"
            )


@dataclass(frozen=True, slots=True)
class FactoryConfig:
    """Configuration for the on-chain factory the escrow is deployed through.

    Attributes:
        factory_address: Checksummed MotherFactory address
        handler_address: Checksummed QuizHandler address (fee source)
        contract_type_tag: Contract type deployed and expected in the event
        fixed_deployment_fee: Fee override in wei; skips the on-chain fee read
    """

    factory_address: str
    handler_address: str | None = None
    contract_type_tag: str = "QuizEscrow"
    fixed_deployment_fee: int | None = None

    def __post_init__(self) -> None:
        """Validate factory configuration."""
        object.__setattr__(
            self,
            "factory_address",
            _checksummed(self.factory_address, "Factory address", "MOTHER_FACTORY_ADDRESS"),
        )

        if self.handler_address:
            object.__setattr__(
                self,
                "handler_address",
                _checksummed(self.handler_address, "Handler address", "QUIZ_HANDLER_ADDRESS"),
            )
        elif self.fixed_deployment_fee is None:
            raise ValueError(
                "Either QUIZ_HANDLER_ADDRESS or DEPLOYMENT_FEE_WEI is required "
                "to determine the deployment fee"
            )

        if self.fixed_deployment_fee is not None and self.fixed_deployment_fee < 0:
            raise ValueError(
                f"Deployment fee must be non-negative, got {self.fixed_deployment_fee}"
            )

        if not self.contract_type_tag:
            raise ValueError("Contract type tag is required (CONTRACT_TYPE_TAG)")


@dataclass(frozen=True, slots=True)
class ResolutionConfig:
    """Retry, timeout and locking policy for the resolution pipeline."""
    poll_interval: float = 5.0  # seconds between settlement polls
    poll_attempts: int = 30  # settlement polls before SettlementTimeout
    log_retry_attempts: int = 3  # outer attempts of the log stage
    log_retry_delay: float = 5.0  # seconds between outer attempts
    request_timeout: float = 30.0  # relay call timeout
    provider_timeout: float = 15.0  # provider call timeout
    fee_retry_count: int = 3  # transparent retries of the fee read
    lock_ttl: float = 300.0  # seconds
    skip_creator_validation: bool = False

    def __post_init__(self) -> None:
        """Validate resolution configuration."""
        if self.poll_interval < 0:
            raise ValueError(f"Poll interval must be non-negative, got {self.poll_interval}")
        if self.poll_attempts <= 0:
            raise ValueError(f"Poll attempts must be positive, got {self.poll_attempts}")
        if self.log_retry_attempts <= 0:
            raise ValueError(
                f"Log retry attempts must be positive, got {self.log_retry_attempts}"
            )
        if self.log_retry_delay < 0:
            raise ValueError(f"Log retry delay must be non-negative, got {self.log_retry_delay}")

        for name in ("request_timeout", "provider_timeout"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
            if value > 120:
                raise ValueError(f"{name} too long (max 120s), got {value}")

        if self.fee_retry_count <= 0:
            raise ValueError(f"Fee retry count must be positive, got {self.fee_retry_count}")
        if self.lock_ttl <= 0:
            raise ValueError(f"Lock TTL must be positive, got {self.lock_ttl}")

        # The job lock is refreshed between steps, never within one
        longest_step = max(
            self.request_timeout * (self.fee_retry_count + 1),
            self.request_timeout + self.poll_interval,
        )
        if self.lock_ttl <= longest_step:
            raise ValueError(
                f"Lock TTL ({self.lock_ttl}s) must exceed the longest pipeline step "
                f"({longest_step}s)"
            )


def parse_providers(value: str) -> tuple[ProviderConfig, ...]:
    """Parse "name=url,name=url" into providers, prioritized by position.

    Entries without a name are called provider-<n>.
    """
    providers: list[ProviderConfig] = []
    for index, entry in enumerate(part.strip() for part in value.split(",")):
        if not entry:
            continue
        name, sep, url = entry.partition("=")
        if not sep or "://" in name:
            name, url = f"provider-{len(providers) + 1}", entry
        name, url = name.strip(), url.strip()
        _validate_url(url, f"provider {name} URL")
        providers.append(ProviderConfig(name=name, endpoint_uri=url, priority=index))
    return tuple(providers)


@dataclass(frozen=True, slots=True)
class DeployerConfig:
    """Main configuration for the escrow deployer.

    Attributes:
        relay: Account-abstraction relay settings
        factory: Factory and fee settings
        providers: Blockchain data providers, tried in priority order
        resolution: Retry, timeout and locking policy
    """

    relay: RelayConfig
    factory: FactoryConfig
    providers: tuple[ProviderConfig, ...]
    resolution: ResolutionConfig = field(default_factory=ResolutionConfig)

    def __post_init__(self) -> None:
        """Validate deployer configuration."""
        if not self.providers:
            raise ValueError("At least one blockchain data provider must be configured")

        names = [provider.name for provider in self.providers]
        if len(set(names)) != len(names):
            raise ValueError(f"Provider names must be unique, got {names}")

        res = self.resolution
        log_step = len(self.providers) * res.provider_timeout + res.log_retry_delay
        if res.lock_ttl <= log_step:
            raise ValueError(
                f"Lock TTL ({res.lock_ttl}s) must exceed one log fetch across "
                f"{len(self.providers)} providers ({log_step}s)"
            )

    @classmethod
    def from_env(cls) -> "DeployerConfig":
        """Load configuration from environment variables.

        Returns:
            DeployerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        relay_config = RelayConfig(
            base_url=os.environ.get("RELAY_BASE_URL", "https://api-qa.collab.land/accountkit"),
            api_key=os.environ.get("RELAY_API_KEY", ""),
            chain_id=int(os.environ.get("CHAIN_ID", "84532")),
            schema_version=os.environ.get("RELAY_SCHEMA_VERSION", "erc4337"),
        )

        fixed_fee = os.environ.get("DEPLOYMENT_FEE_WEI")
        factory_config = FactoryConfig(
            factory_address=os.environ.get("MOTHER_FACTORY_ADDRESS", ""),
            handler_address=os.environ.get("QUIZ_HANDLER_ADDRESS") or None,
            contract_type_tag=os.environ.get("CONTRACT_TYPE_TAG", "QuizEscrow"),
            fixed_deployment_fee=int(fixed_fee) if fixed_fee else None,
        )

        if providers_value := os.environ.get("PROVIDERS", ""):
            providers = parse_providers(providers_value)
        else:
            urls = list(DEFAULT_PROVIDER_URLS)
            names = [f"public-{i}" for i in range(1, len(urls) + 1)]
            if rpc_url := os.environ.get("RPC_URL"):
                urls.insert(0, rpc_url)
                names.insert(0, "primary")
            providers = parse_providers(
                ",".join(f"{name}={url}" for name, url in zip(names, urls))
            )

        resolution_config = ResolutionConfig(
            poll_interval=float(os.environ.get("POLL_INTERVAL", "5")),
            poll_attempts=int(os.environ.get("POLL_ATTEMPTS", "30")),
            log_retry_attempts=int(os.environ.get("LOG_RETRY_ATTEMPTS", "3")),
            log_retry_delay=float(os.environ.get("LOG_RETRY_DELAY", "5")),
            request_timeout=float(os.environ.get("REQUEST_TIMEOUT", "30")),
            provider_timeout=float(os.environ.get("PROVIDER_TIMEOUT", "15")),
            fee_retry_count=int(os.environ.get("FEE_RETRY_COUNT", "3")),
            lock_ttl=float(os.environ.get("LOCK_TTL", "300")),
            skip_creator_validation=_env_bool("SKIP_CREATOR_VALIDATION"),
        )

        return cls(
            relay=relay_config,
            factory=factory_config,
            providers=providers,
            resolution=resolution_config,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Escrow Deployer Configuration")
        logger.info("=" * 60)

        logger.info("Relay:")
        logger.info(f"  Base URL: {self.relay.base_url}")
        logger.info(f"  API Key: {'[CONFIGURED]' if self.relay.api_key else '[NOT SET]'}")
        logger.info(f"  Chain ID: {self.relay.chain_id}")
        logger.info(f"  Schema: {self.relay.schema_version}")

        logger.info("Factory:")
        logger.info(f"  MotherFactory: {self.factory.factory_address}")
        logger.info(f"  Handler: {self.factory.handler_address or '[NOT SET]'}")
        logger.info(f"  Contract Type: {self.factory.contract_type_tag}")
        if self.factory.fixed_deployment_fee is not None:
            logger.info(f"  Fixed Fee: {self.factory.fixed_deployment_fee} wei")

        logger.info("Providers:")
        for provider in sorted(self.providers, key=lambda p: p.priority):
            logger.info(f"  [{provider.priority}] {provider.name}: {provider.endpoint_uri}")

        res = self.resolution
        logger.info("Resolution Settings:")
        logger.info(f"  Settlement Polling: {res.poll_attempts} x {res.poll_interval}s")
        logger.info(f"  Log Retries: {res.log_retry_attempts} x {res.log_retry_delay}s")
        logger.info(f"  Timeouts: relay={res.request_timeout}s, provider={res.provider_timeout}s")
        logger.info(f"  Lock TTL: {res.lock_ttl}s")
        if res.skip_creator_validation:
            logger.warning("  Creator validation: SKIPPED")

        logger.info("=" * 60)
