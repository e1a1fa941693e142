import json
from pathlib import Path
from typing import Any

from eth_abi import encode
from web3 import Web3
from web3.contract import Contract

ESCROW_CONSTRUCTOR_TYPES: list[str] = ["address", "address", "uint256", "uint256", "uint256"]


class ContractUtility:
    """
    Utility for ABI loading and call-data encoding.

    Encoding needs no RPC connection, so the Web3 instance is created without
    a provider.
    """

    ABI_DIR: Path = Path(__file__).parent.parent / "abi"

    def __init__(self) -> None:
        self.w3 = Web3()
        self._contracts: dict[str, Contract] = {}

    def get_contract_abi(self, contract_name: str) -> list[dict[str, Any]]:
        """Fetches ABI of the given contract from the abi folder.

        Args:
            contract_name: Name of the contract (without .json extension)

        Returns:
            List of ABI dictionaries for the contract

        Raises:
            FileNotFoundError: If the contract file doesn't exist
            json.JSONDecodeError: If the contract file is invalid JSON
        """
        contract_path: Path = (self.ABI_DIR / f"{contract_name}.json").resolve()

        with contract_path.open() as file:
            contract_data: dict[str, Any] = json.load(file)

        return contract_data["abi"]

    def contract(self, contract_name: str) -> Contract:
        """Return an address-less contract object, used only for encoding."""
        if contract_name not in self._contracts:
            self._contracts[contract_name] = self.w3.eth.contract(
                abi=self.get_contract_abi(contract_name)
            )
        return self._contracts[contract_name]

    @staticmethod
    def encode_escrow_params(
        creator: str,
        authorized_recorder: str,
        duration_seconds: int,
        correct_reward: int,
        incorrect_reward: int
    ) -> bytes:
        """ABI-encode the escrow constructor parameters passed through the factory."""
        return encode(
            ESCROW_CONSTRUCTOR_TYPES,
            [
                Web3.to_checksum_address(creator),
                Web3.to_checksum_address(authorized_recorder),
                duration_seconds,
                correct_reward,
                incorrect_reward,
            ],
        )

    def encode_deploy_call(self, contract_type_tag: str, params: bytes) -> str:
        """Encode MotherFactory.deployContract(contractType, params) call data."""
        factory = self.contract("MotherFactory")
        return factory.encode_abi("deployContract", args=[contract_type_tag, params])
