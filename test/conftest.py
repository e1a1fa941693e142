"""Shared fixtures for escrow deployer tests."""

import pytest
from web3 import Web3

from escrow_deployer.event_decoder import CONTRACT_DEPLOYED_TOPIC

FACTORY = "0x85BfE05492aFC3D04Ff3B2ca6771ACF6f853d90d"
HANDLER = "0x" + "cd" * 20
FEE = 10**15


def pad_address(address: str) -> str:
    """Left-pad an address to a 32-byte hex word."""
    return "0x" + "0" * 24 + address[2:].lower()


def deployment_log(
    creator: str,
    deployed: str,
    tag: str = "QuizEscrow",
    handler: str = HANDLER,
    fee: int = FEE,
    log_index: int = 0,
    address: str = FACTORY,
    block_number: int = 10,
    transaction_hash: str = "0x" + "11" * 32,
) -> dict:
    """Build a raw ContractDeployed log as returned in a transaction receipt."""
    return {
        "address": address,
        "topics": [
            CONTRACT_DEPLOYED_TOPIC.to_0x_hex(),
            pad_address(creator),
            Web3.keccak(text=tag).to_0x_hex(),
            pad_address(deployed),
        ],
        "data": pad_address(handler) + fee.to_bytes(32, "big").hex(),
        "blockNumber": block_number,
        "transactionHash": transaction_hash,
        "logIndex": log_index,
    }


@pytest.fixture
def make_deployment_log():
    return deployment_log


@pytest.fixture
def factory_address():
    return FACTORY
