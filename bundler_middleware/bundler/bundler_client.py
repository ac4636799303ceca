import logging
from typing import Any

from bundler_middleware.middleware.config import BundlerEndpoint
from bundler_middleware.middleware.exceptions import \
    EntryPointNotSupported, ProtocolError, classify_bundler_error
from bundler_middleware.typing import Address, UserOperationHash
from bundler_middleware.user_operation.models import GasEstimate, \
    UserOperationReceipt
from bundler_middleware.user_operation.user_operation import \
    UserOperation, is_address, is_user_operation_hash
from bundler_middleware.utils.eth_client_utils import \
    DEFAULT_BACKOFF_SECONDS, DEFAULT_RETRY_ATTEMPTS, send_rpc_request


class BundlerClient:
    """JSON-RPC client for an ERC-4337 bundler serving one EntryPoint."""

    endpoint: BundlerEndpoint
    retry_attempts: int
    backoff_seconds: float
    _supported_entrypoints: list[Address] | None

    def __init__(
        self,
        endpoint: BundlerEndpoint,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ):
        self.endpoint = endpoint
        self.retry_attempts = retry_attempts
        self.backoff_seconds = backoff_seconds
        self._supported_entrypoints = None

    async def _request(
        self, method: str, params: list, retry_attempts: int | None = None
    ) -> Any:
        json_result = await send_rpc_request(
            self.endpoint.url,
            method,
            params,
            self.retry_attempts if retry_attempts is None else retry_attempts,
            self.backoff_seconds,
        )
        if "error" in json_result:
            error = json_result["error"]
            if not isinstance(error, dict):
                raise ProtocolError(
                    f"Invalid JSON-RPC error object for {method}: {error}")
            exception = classify_bundler_error(error)
            logging.warning(
                f"{method} rejected by bundler - error code:"
                f"{error.get('code')} - error message:{error.get('message')}"
            )
            raise exception
        return json_result["result"]

    async def supported_entrypoints(self) -> list[Address]:
        result = await self._request("eth_supportedEntryPoints", [])
        if not isinstance(result, list) or not all(
                is_address(entrypoint) for entrypoint in result):
            raise ProtocolError(
                f"Invalid eth_supportedEntryPoints result: {result}")
        return [Address(entrypoint) for entrypoint in result]

    async def verify_entrypoint_supported(self) -> None:
        if self._supported_entrypoints is None:
            supported_entrypoints = await self.supported_entrypoints()
            if self.endpoint.entrypoint.lower() not in [
                entrypoint.lower() for entrypoint in supported_entrypoints
            ]:
                logging.critical(
                    f"entrypoint {self.endpoint.entrypoint} not supported by "
                    f"bundler {self.endpoint.url}"
                )
                raise EntryPointNotSupported(
                    self.endpoint.entrypoint, supported_entrypoints)
            self._supported_entrypoints = supported_entrypoints

    async def chain_id(self) -> int:
        result = await self._request("eth_chainId", [])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise ProtocolError(f"Invalid eth_chainId result: {result}")
        return int(result, 16)

    async def send_user_operation(
        self, user_operation: UserOperation
    ) -> UserOperationHash:
        await self.verify_entrypoint_supported()
        # never retried
        result = await self._request(
            "eth_sendUserOperation",
            [
                user_operation.get_user_operation_json(
                    self.endpoint.entrypoint_version),
                self.endpoint.entrypoint,
            ],
            retry_attempts=1,
        )
        if not is_user_operation_hash(result):
            raise ProtocolError(
                f"Invalid eth_sendUserOperation result: {result}")
        return UserOperationHash(result)

    async def estimate_user_operation_gas(
        self, user_operation: UserOperation
    ) -> GasEstimate:
        await self.verify_entrypoint_supported()
        result = await self._request(
            "eth_estimateUserOperationGas",
            [
                user_operation.get_user_operation_json(
                    self.endpoint.entrypoint_version),
                self.endpoint.entrypoint,
            ],
        )
        return GasEstimate.from_json(result)

    async def get_user_operation_receipt(
        self, user_operation_hash: UserOperationHash
    ) -> UserOperationReceipt | None:
        await self.verify_entrypoint_supported()
        result = await self._request(
            "eth_getUserOperationReceipt", [user_operation_hash])
        if result is None:
            return None
        return UserOperationReceipt.from_json(result)
