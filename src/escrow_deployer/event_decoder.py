#!/usr/bin/env python3
"""Event decoding and validation for the escrow deployer.

This module turns raw receipt logs into DeploymentEvent records and checks a
decoded event against the job it is supposed to belong to. Decoding is a pure
function of its inputs.
"""

import logging
from collections.abc import Iterable
from typing import Any

from hexbytes import HexBytes
from web3 import Web3

from .errors import ValidationMismatchError
from .models import DeploymentEvent, DeploymentJob

# Get logger for this module
logger = logging.getLogger(__name__)

CONTRACT_DEPLOYED_SIGNATURE = "ContractDeployed(address,string,address,address,uint256)"
CONTRACT_DEPLOYED_TOPIC = HexBytes(Web3.keccak(text=CONTRACT_DEPLOYED_SIGNATURE))


def _field(log: Any, name: str, default: Any = None) -> Any:
    """Read a log field from either a dict-like or an attribute-style log."""
    if hasattr(log, "get"):
        return log.get(name, default)
    return getattr(log, name, default)


def _to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    return bytes(HexBytes(value))


def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return HexBytes(value).to_0x_hex()


def topic_to_address(topic: Any) -> str:
    """Parse a 32-byte topic or data word as a checksummed address."""
    raw = _to_bytes(topic)
    if len(raw) != 32:
        raise ValueError(f"Expected a 32-byte word, got {len(raw)} bytes")
    return Web3.to_checksum_address("0x" + raw[-20:].hex())


class EventDecoder:
    """Decodes and validates ContractDeployed events from the factory.

    ContractDeployed(address indexed creator, string indexed contractType,
    address indexed contractAddress, address handler, uint256 deploymentFee)

    The contract type is an indexed string, so the log only carries its
    keccak hash; it is resolved by comparing against the expected tag.
    """

    def __init__(self, factory_address: str) -> None:
        """Initialize the EventDecoder.

        Args:
            factory_address: Only logs emitted by this address are considered
        """
        self.factory_address = Web3.to_checksum_address(factory_address)

    def _is_deployment_log(self, log: Any) -> bool:
        address = _field(log, "address")
        if not address or str(address).lower() != self.factory_address.lower():
            return False
        topics = _field(log, "topics") or []
        if len(topics) < 4:
            return False
        return _to_bytes(topics[0]) == CONTRACT_DEPLOYED_TOPIC

    def _parse(self, log: Any, expected_tag: str | None) -> DeploymentEvent:
        topics = list(_field(log, "topics"))
        data = _to_bytes(_field(log, "data"))
        if len(data) < 64:
            raise ValueError(f"ContractDeployed data too short: {len(data)} bytes")

        tag_topic = _to_bytes(topics[2])
        if expected_tag is not None and tag_topic == Web3.keccak(text=expected_tag):
            contract_type_tag = expected_tag
        else:
            contract_type_tag = _to_hex(tag_topic)

        return DeploymentEvent(
            creator_address=topic_to_address(topics[1]),
            contract_type_tag=contract_type_tag,
            deployed_address=topic_to_address(topics[3]),
            handler_address=topic_to_address(data[0:32]),
            deployment_fee=int.from_bytes(data[32:64], byteorder="big"),
            block_number=int(_field(log, "blockNumber", 0)),
            transaction_id=_to_hex(_field(log, "transactionHash", b"")),
            log_index=int(_field(log, "logIndex", 0)),
        )

    def decode_all(
        self,
        logs: Iterable[Any],
        expected_contract_type_tag: str | None = None
    ) -> list[DeploymentEvent]:
        """Decode every deployment event in the logs, ordered by log index.

        Malformed matching entries are logged and skipped.
        """
        events: list[DeploymentEvent] = []
        for log in logs:
            if not self._is_deployment_log(log):
                continue
            try:
                events.append(self._parse(log, expected_contract_type_tag))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed ContractDeployed log: {e}")
        events.sort(key=lambda event: (event.block_number, event.log_index))
        return events

    def decode(
        self,
        logs: Iterable[Any],
        expected_contract_type_tag: str
    ) -> DeploymentEvent | None:
        """Return the first deployment event of the expected type, or None.

        Deployments of other contract types are skipped. Batched deployments
        of the expected type are not disambiguated: only the lowest log index
        is returned.
        """
        logs = list(logs)
        decoded = self.decode_all(logs, expected_contract_type_tag)
        events = [e for e in decoded if e.contract_type_tag == expected_contract_type_tag]
        if len(events) < len(decoded):
            logger.debug(
                f"Skipped {len(decoded) - len(events)} ContractDeployed events "
                f"of other contract types"
            )
        if not events:
            logger.info(f"No {expected_contract_type_tag} ContractDeployed event among {len(logs)} logs")
            return None
        if len(events) > 1:
            logger.warning(
                f"Found {len(events)} ContractDeployed events, using log index {events[0].log_index}"
            )
        logger.info(f"Decoded {events[0]}")
        return events[0]

    def validate(
        self,
        event: DeploymentEvent,
        job: DeploymentJob,
        expected_contract_type_tag: str,
        skip_creator_validation: bool = False
    ) -> None:
        """Check a decoded event against the job it should belong to.

        Addresses are compared case-insensitively.

        Raises:
            ValidationMismatchError: If the contract type or creator differs
        """
        if event.contract_type_tag != expected_contract_type_tag:
            raise ValidationMismatchError(
                f"Contract type mismatch: expected {expected_contract_type_tag}, "
                f"got {event.contract_type_tag}",
                expected=expected_contract_type_tag,
                actual=event.contract_type_tag,
                transaction_id=event.transaction_id,
            )

        if skip_creator_validation:
            logger.warning(
                f"Creator validation skipped for job {job.job_key} "
                f"(event creator {event.creator_address})"
            )
            return

        if event.creator_address.lower() != job.creator_address.lower():
            raise ValidationMismatchError(
                f"Creator mismatch: expected {job.creator_address}, got {event.creator_address}",
                expected=job.creator_address,
                actual=event.creator_address,
                transaction_id=event.transaction_id,
            )
