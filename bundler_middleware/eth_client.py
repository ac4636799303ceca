from abc import ABC, abstractmethod
import asyncio
import logging
import math
from typing import Any

from bundler_middleware.middleware.exceptions import ChainClientError, \
    ProtocolError, TransportError
from bundler_middleware.typing import Address, TransactionHash
from bundler_middleware.utils.eth_client_utils import \
    DEFAULT_BACKOFF_SECONDS, DEFAULT_RETRY_ATTEMPTS, send_rpc_request


class PendingTransaction:
    """A broadcast transaction, resolved by polling the node for a receipt."""

    def __init__(self, transaction_hash: TransactionHash, client: "ChainClient"):
        self.transaction_hash = transaction_hash
        self.client = client

    async def wait(
        self, poll_interval: float = 1, timeout: float = 120
    ) -> dict | None:
        number_of_polls = max(math.ceil(timeout / poll_interval), 1)
        for i in range(number_of_polls):
            receipt = await self.client.get_transaction_receipt(
                self.transaction_hash)
            if receipt is not None:
                return receipt
            if i < number_of_polls - 1:
                await asyncio.sleep(poll_interval)
        logging.warning(
            f"no receipt for transaction {self.transaction_hash} "
            f"after {timeout}s")
        return None

    def __repr__(self) -> str:
        return f"<PendingTransaction {self.transaction_hash}>"


class ChainClient(ABC):
    """Capability interface of a chain RPC client."""

    @abstractmethod
    async def chain_id(self) -> int:
        pass

    @abstractmethod
    async def call(
        self, transaction: dict[str, Any], block: str = "latest"
    ) -> bytes:
        pass

    @abstractmethod
    async def get_code(self, address: Address, block: str = "latest") -> bytes:
        pass

    @abstractmethod
    async def gas_price(self) -> int:
        pass

    @abstractmethod
    async def max_priority_fee_per_gas(self) -> int:
        pass

    @abstractmethod
    async def get_balance(self, address: Address, block: str = "latest") -> int:
        pass

    @abstractmethod
    async def get_transaction_count(
        self, address: Address, block: str = "latest"
    ) -> int:
        pass

    @abstractmethod
    async def estimate_gas(self, transaction: dict[str, Any]) -> int:
        pass

    @abstractmethod
    async def send_transaction(self, transaction: dict[str, Any]) -> Any:
        pass

    @abstractmethod
    async def send_raw_transaction(
        self, raw_transaction: bytes | str
    ) -> PendingTransaction:
        pass

    @abstractmethod
    async def get_transaction_receipt(
        self, transaction_hash: TransactionHash
    ) -> dict | None:
        pass


def format_transaction(transaction: dict[str, Any]) -> dict[str, Any]:
    formatted: dict[str, Any] = {}
    for key, value in transaction.items():
        if value is None:
            continue
        if isinstance(value, bool):
            formatted[key] = value
        elif isinstance(value, int):
            formatted[key] = hex(value)
        elif isinstance(value, (bytes, bytearray)):
            formatted[key] = "0x" + bytes(value).hex()
        else:
            formatted[key] = value
    return formatted


def hex_to_bytes(value: str) -> bytes:
    if value in ("0x", ""):
        return b""
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


class EthClient(ChainClient):
    """ChainClient backed by a node's JSON-RPC endpoint."""

    ethereum_node_url: str
    retry_attempts: int
    backoff_seconds: float

    def __init__(
        self,
        ethereum_node_url: str,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ):
        self.ethereum_node_url = ethereum_node_url
        self.retry_attempts = retry_attempts
        self.backoff_seconds = backoff_seconds

    async def _request(self, method: str, params: list | None = None) -> Any:
        try:
            json_result = await send_rpc_request(
                self.ethereum_node_url,
                method,
                params,
                self.retry_attempts,
                self.backoff_seconds,
            )
        except (TransportError, ProtocolError) as excp:
            raise ChainClientError(method, excp.message, excp) from excp

        if "error" in json_result:
            error = json_result["error"]
            message = str(error.get("message", "")) \
                if isinstance(error, dict) else str(error)
            if isinstance(error, dict) and error.get("data") is not None:
                message += f" data: {error['data']}"
            raise ChainClientError(method, message)
        return json_result["result"]

    async def _request_quantity(
        self, method: str, params: list | None = None
    ) -> int:
        result = await self._request(method, params)
        if not isinstance(result, str) or not result.startswith("0x"):
            raise ChainClientError(
                method, f"Invalid quantity result: {result}")
        return int(result, 16)

    async def chain_id(self) -> int:
        return await self._request_quantity("eth_chainId")

    async def call(
        self, transaction: dict[str, Any], block: str = "latest"
    ) -> bytes:
        result = await self._request(
            "eth_call", [format_transaction(transaction), block])
        return hex_to_bytes(result)

    async def get_code(self, address: Address, block: str = "latest") -> bytes:
        result = await self._request("eth_getCode", [address, block])
        return hex_to_bytes(result)

    async def gas_price(self) -> int:
        return await self._request_quantity("eth_gasPrice")

    async def max_priority_fee_per_gas(self) -> int:
        return await self._request_quantity("eth_maxPriorityFeePerGas")

    async def get_balance(self, address: Address, block: str = "latest") -> int:
        return await self._request_quantity("eth_getBalance", [address, block])

    async def get_transaction_count(
        self, address: Address, block: str = "latest"
    ) -> int:
        return await self._request_quantity(
            "eth_getTransactionCount", [address, block])

    async def estimate_gas(self, transaction: dict[str, Any]) -> int:
        return await self._request_quantity(
            "eth_estimateGas", [format_transaction(transaction)])

    async def send_transaction(
        self, transaction: dict[str, Any]
    ) -> PendingTransaction:
        transaction_hash = await self._request(
            "eth_sendTransaction", [format_transaction(transaction)])
        logging.info(f"Transaction sent: {transaction_hash}")
        return PendingTransaction(TransactionHash(transaction_hash), self)

    async def send_raw_transaction(
        self, raw_transaction: bytes | str
    ) -> PendingTransaction:
        if isinstance(raw_transaction, (bytes, bytearray)):
            raw_transaction = "0x" + bytes(raw_transaction).hex()
        transaction_hash = await self._request(
            "eth_sendRawTransaction", [raw_transaction])
        logging.info(f"Raw transaction sent: {transaction_hash}")
        return PendingTransaction(TransactionHash(transaction_hash), self)

    async def get_transaction_receipt(
        self, transaction_hash: TransactionHash
    ) -> dict | None:
        return await self._request(
            "eth_getTransactionReceipt", [transaction_hash])
