import logging
from typing import Any, Awaitable

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from bundler_middleware.bundler.bundler_client import BundlerClient
from bundler_middleware.eth_client import ChainClient
from bundler_middleware.middleware.config import MiddlewareConfig
from bundler_middleware.middleware.exceptions import ChainClientError, \
    WalletNotDeployed
from bundler_middleware.typing import Address
from bundler_middleware.user_operation.models import FeeData, GasEstimate, \
    TransactionIntent
from bundler_middleware.user_operation.user_operation import UserOperation

GET_NONCE_SELECTOR = function_signature_to_4byte_selector("getNonce()")


def apply_percentage(value: int, percentage: int) -> int:
    """value * percentage / 100, rounded up."""
    return -(-value * percentage // 100)


def apply_gas_margin(value: int, gas_margin_percentage: int) -> int:
    return apply_percentage(value, 100 + gas_margin_percentage)


async def call_chain_client(method: str, awaitable: Awaitable[Any]) -> Any:
    try:
        return await awaitable
    except ChainClientError:
        raise
    except Exception as excp:
        raise ChainClientError(method, str(excp), excp) from excp


class GasResolver:
    chain_client: ChainClient
    bundler_client: BundlerClient
    config: MiddlewareConfig
    execute_selector: bytes

    def __init__(
        self,
        chain_client: ChainClient,
        bundler_client: BundlerClient,
        config: MiddlewareConfig,
    ):
        self.chain_client = chain_client
        self.bundler_client = bundler_client
        self.config = config
        self.execute_selector = function_signature_to_4byte_selector(
            config.execute_function)

    async def resolve(
        self, intent: TransactionIntent, wallet_address: Address
    ) -> UserOperation:
        """Build an unsigned UserOperation with nonce, call data, gas limits
        and fees filled in."""
        nonce, init_code = await self.get_nonce_and_init_code(wallet_address)
        call_data = self.encode_execute_call_data(intent)
        fee_data = await self.get_fee_data()

        user_operation = UserOperation(
            sender_address=wallet_address,
            nonce=nonce,
            init_code=init_code,
            call_data=call_data,
            call_gas_limit=0,
            verification_gas_limit=0,
            pre_verification_gas=0,
            max_fee_per_gas=fee_data.max_fee_per_gas,
            max_priority_fee_per_gas=fee_data.max_priority_fee_per_gas,
            signature=self.config.dummy_signature,
        )
        gas_estimate = await self.estimate_gas(user_operation)

        user_operation.signature = b""
        user_operation.call_gas_limit = gas_estimate.call_gas_limit
        user_operation.verification_gas_limit = \
            gas_estimate.verification_gas_limit
        user_operation.pre_verification_gas = gas_estimate.pre_verification_gas
        return user_operation

    async def is_deployed(self, wallet_address: Address) -> bool:
        code = await call_chain_client(
            "eth_getCode", self.chain_client.get_code(wallet_address))
        return len(code) > 0

    async def get_wallet_nonce(self, wallet_address: Address) -> int:
        result = await call_chain_client(
            "eth_call",
            self.chain_client.call(
                {"to": wallet_address, "data": GET_NONCE_SELECTOR}),
        )
        try:
            (nonce,) = decode(["uint256"], result)
        except DecodingError as excp:
            raise ChainClientError(
                "eth_call",
                f"Invalid getNonce result for {wallet_address}: {result!r}",
                excp,
            ) from excp
        return nonce

    async def get_nonce_and_init_code(
        self, wallet_address: Address
    ) -> tuple[int, bytes]:
        if await self.is_deployed(wallet_address):
            nonce = await self.get_wallet_nonce(wallet_address)
            logging.debug(f"wallet {wallet_address} nonce: {nonce}")
            return nonce, b""

        if self.config.init_code is None:
            logging.error(
                f"wallet {wallet_address} is not deployed and no init code "
                "is configured")
            raise WalletNotDeployed(wallet_address)
        logging.info(
            f"wallet {wallet_address} is not deployed, "
            "the operation will deploy it")
        return 0, self.config.init_code

    def encode_execute_call_data(self, intent: TransactionIntent) -> bytes:
        return self.execute_selector + encode(
            ["address", "uint256", "bytes"],
            [to_checksum_address(intent.to), intent.value, intent.data],
        )

    async def get_fee_data(self) -> FeeData:
        gas_price = await call_chain_client(
            "eth_gasPrice", self.chain_client.gas_price())
        max_fee_per_gas = apply_percentage(
            gas_price, self.config.max_fee_per_gas_percentage_multiplier)

        if self.config.is_legacy_mode:
            return FeeData(max_fee_per_gas, max_fee_per_gas)

        max_priority_fee_per_gas = apply_percentage(
            await call_chain_client(
                "eth_maxPriorityFeePerGas",
                self.chain_client.max_priority_fee_per_gas()),
            self.config.max_priority_fee_per_gas_percentage_multiplier,
        )
        # max priority fee per gas can't be higher than max fee per gas
        if max_priority_fee_per_gas > max_fee_per_gas:
            max_priority_fee_per_gas = max_fee_per_gas
        return FeeData(max_fee_per_gas, max_priority_fee_per_gas)

    async def estimate_gas(self, user_operation: UserOperation) -> GasEstimate:
        raw_estimate = await self.bundler_client.estimate_user_operation_gas(
            user_operation)
        margin = self.config.gas_margin_percentage
        gas_estimate = GasEstimate(
            pre_verification_gas=apply_gas_margin(
                raw_estimate.pre_verification_gas, margin),
            verification_gas_limit=apply_gas_margin(
                raw_estimate.verification_gas_limit, margin),
            call_gas_limit=apply_gas_margin(
                raw_estimate.call_gas_limit, margin),
        )
        logging.debug(
            f"gas estimate {raw_estimate} with {margin}% margin: "
            f"{gas_estimate}")
        return gas_estimate
