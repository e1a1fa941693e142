import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from web3 import AsyncWeb3, Web3
from web3.providers import AsyncHTTPProvider

from ..errors import RelayError
from .contract_utility import ContractUtility

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SettlementStatus:
    """Settlement state of an operation handle as reported by the relay.

    Attributes:
        settled: Whether the operation has been included on-chain
        transaction_id: Hash of the bundle transaction, once settled
        succeeded: Execution status reported by the relay, if any
    """
    settled: bool
    transaction_id: str | None = None
    succeeded: bool | None = None


NOT_SETTLED = SettlementStatus(settled=False)


def _parse_erc4337(payload: dict[str, Any]) -> SettlementStatus:
    # eth_getUserOperationReceipt: {"userOpHash", "success", "receipt": {...}}
    receipt = payload.get("receipt")
    if not isinstance(receipt, dict) or not receipt.get("transactionHash"):
        return NOT_SETTLED
    success = payload.get("success")
    return SettlementStatus(
        settled=True,
        transaction_id=receipt["transactionHash"],
        succeeded=success if isinstance(success, bool) else None,
    )


def _parse_flat(payload: dict[str, Any]) -> SettlementStatus:
    # Legacy Account Kit receipt: {"transactionHash", "status", ...}
    if not payload.get("transactionHash"):
        return NOT_SETTLED
    status = payload.get("status")
    succeeded = None
    if status is not None:
        succeeded = str(status).lower() in ("1", "0x1", "true", "success")
    return SettlementStatus(
        settled=True,
        transaction_id=payload["transactionHash"],
        succeeded=succeeded,
    )


SETTLEMENT_PARSERS = {
    "erc4337": _parse_erc4337,
    "flat": _parse_flat,
}


def parse_settlement_status(payload: Any, schema_version: str) -> SettlementStatus:
    """
    Parse a settlement-status response body.

    This is the only place that knows the relay's response shapes; each
    supported relay version has exactly one parser.

    Args:
        payload: Decoded JSON body (None or empty means not yet settled)
        schema_version: One of SETTLEMENT_PARSERS

    Returns:
        Parsed settlement status

    Raises:
        ValueError: If the schema version is unknown
        RelayError: If the payload is not a JSON object
    """
    try:
        parser = SETTLEMENT_PARSERS[schema_version]
    except KeyError:
        raise ValueError(f"Unknown relay schema version: {schema_version}") from None

    if not payload:
        return NOT_SETTLED
    if not isinstance(payload, dict):
        raise RelayError(f"Unexpected settlement payload type: {type(payload).__name__}")
    return parser(payload)


class AccountKitRelay:
    """Client for the account-abstraction relay.

    Submits user operations on behalf of an identity, reports their
    settlement status and exposes the current deployment fee.
    """

    SUBMIT_PATH: str = "/v1/telegrambot/evm/submitUserOperation"
    RECEIPT_PATH: str = "/v1/telegrambot/evm/userOperationReceipt"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        chain_id: int,
        *,
        schema_version: str = "erc4337",
        timeout: float = 30.0,
        fee_rpc_url: str | None = None,
        handler_address: str | None = None,
        fixed_deployment_fee: int | None = None,
        contract_util: ContractUtility | None = None
    ) -> None:
        """Initialize the relay client.

        Args:
            base_url: Relay API base URL
            api_key: API key sent with every request
            chain_id: Chain the operations execute on
            schema_version: Settlement-status response schema
            timeout: Per-request timeout in seconds
            fee_rpc_url: RPC endpoint used to read the handler's fee
            handler_address: Handler contract exposing DEPLOYMENT_FEE()
            fixed_deployment_fee: Fee override in wei
            contract_util: ABI source for the handler contract
        """
        if schema_version not in SETTLEMENT_PARSERS:
            raise ValueError(f"Unknown relay schema version: {schema_version}")
        if fixed_deployment_fee is None and not (fee_rpc_url and handler_address):
            raise ValueError(
                "A fee RPC URL and handler address are required when no fixed fee is set"
            )

        self.base_url: str = base_url.rstrip("/")
        self.api_key: str = api_key
        self.chain_id: int = chain_id
        self.schema_version: str = schema_version
        self.timeout: float = timeout
        self.fee_rpc_url = fee_rpc_url
        self.handler_address = (
            Web3.to_checksum_address(handler_address) if handler_address else None
        )
        self.fixed_deployment_fee = fixed_deployment_fee
        self.contract_util = contract_util or ContractUtility()

    def _headers(self, identity: str | None = None) -> dict[str, str]:
        headers = {
            "X-API-KEY": self.api_key,
            "Content-Type": "application/json",
        }
        if identity:
            headers["X-TG-BOT-TOKEN"] = identity
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: Any = None,
        identity: str | None = None
    ) -> httpx.Response:
        """Send a request to the relay.

        Raises:
            RelayError: On transport failure or a non-2xx response other
                than 404
        """
        url = self.base_url + path
        logger.debug(f"{method} {url} params={params}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response: httpx.Response = await client.request(
                    method,
                    url,
                    params=params,
                    json=payload,
                    headers=self._headers(identity),
                )
        except httpx.HTTPError as e:
            raise RelayError(f"Relay request {method} {path} failed: {e}") from e

        if response.status_code >= 400 and response.status_code != 404:
            raise RelayError(
                f"Relay responded with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def execute_as(self, identity: str, target: str, call_data: str, value: int) -> str:
        """
        Submit a call to be executed by the identity's smart account.

        Args:
            identity: Identity the relay executes the operation as
            target: Contract address to call
            call_data: Hex-encoded call data
            value: Value to send, in wei

        Returns:
            The relay-issued operation handle, verbatim

        Raises:
            RelayError: If the relay rejects the operation or returns no handle
        """
        payload: dict[str, Any] = {
            "target": Web3.to_checksum_address(target),
            "calldata": call_data,
            "value": str(value),
        }

        response = await self._request(
            "POST",
            self.SUBMIT_PATH,
            params={"chainId": self.chain_id},
            payload=payload,
            identity=identity,
        )
        if response.status_code == 404:
            raise RelayError("Relay submit endpoint not found", status_code=404)

        body = response.json()
        match body:
            case {"userOperationHash": str(handle)} if handle:
                logger.info(f"Relay accepted operation {handle}")
                return handle
            case {"error": error_msg}:
                raise RelayError(f"Relay rejected operation: {error_msg}")
            case _:
                raise RelayError(f"Relay returned no operation handle: {body}")

    async def get_settlement_status(self, handle: str) -> SettlementStatus:
        """
        Query the settlement status of an operation handle.

        A 404 or an empty body means the relay has not seen it settle yet.

        Raises:
            RelayError: On transport failure or an unparseable response
        """
        response = await self._request(
            "GET",
            self.RECEIPT_PATH,
            params={"userOperationHash": handle, "chainId": self.chain_id},
        )
        if response.status_code == 404 or not response.content:
            return NOT_SETTLED

        try:
            body = response.json()
        except ValueError as e:
            raise RelayError(f"Relay returned invalid JSON for {handle}") from e
        return parse_settlement_status(body, self.schema_version)

    async def get_current_deployment_fee(self) -> int:
        """
        Return the current deployment fee in wei.

        Uses the configured fixed fee if present, otherwise reads
        DEPLOYMENT_FEE() from the handler contract.
        """
        if self.fixed_deployment_fee is not None:
            return self.fixed_deployment_fee

        w3 = AsyncWeb3(AsyncHTTPProvider(self.fee_rpc_url))
        try:
            handler = w3.eth.contract(
                address=self.handler_address,
                abi=self.contract_util.get_contract_abi("QuizHandler"),
            )
            fee = await asyncio.wait_for(
                handler.functions.DEPLOYMENT_FEE().call(),
                timeout=self.timeout,
            )
        finally:
            await w3.provider.disconnect()
        logger.debug(f"Handler deployment fee: {fee} wei")
        return int(fee)
