import asyncio

import pytest
from eth_abi import encode
from eth_account import Account

from bundler_middleware.eth_client import ChainClient
from bundler_middleware.middleware.config import BundlerEndpoint, \
    MiddlewareConfig
from bundler_middleware.typing import Address
from bundler_middleware.user_operation.models import GasEstimate
from bundler_middleware.user_operation.user_operation import \
    ENTRYPOINT_V06, EntryPointVersion
from bundler_middleware.user_operation.user_operation_hash import \
    get_user_operation_hash

OWNER_KEY = "0x26d45bda70d0ed86247c9f701cce70e0574556d0fd1fc5fc32a69f84397ef768"
WALLET_ADDRESS = Address("0xAAA0000000000000000000000000000000000001")
TARGET_ADDRESS = Address("0xABC0000000000000000000000000000000000002")
CHAIN_ID = 1337
FACTORY_INIT_CODE = (
    bytes.fromhex("9406Cc6185a346906296840746125a0E44976454") +
    bytes.fromhex("5fbfb9cf") + bytes(64)
)


class FakeChainClient(ChainClient):
    def __init__(
        self,
        nonce: int = 3,
        is_deployed: bool = True,
        gas_price: int = 2_000_000_000,
        max_priority_fee_per_gas: int = 1_000_000_000,
        chain_id: int = CHAIN_ID,
    ):
        self.nonce = nonce
        self.is_deployed = is_deployed
        self._gas_price = gas_price
        self._max_priority_fee_per_gas = max_priority_fee_per_gas
        self._chain_id = chain_id
        self.calls: list[str] = []

    async def chain_id(self):
        self.calls.append("eth_chainId")
        return self._chain_id

    async def call(self, transaction, block="latest"):
        self.calls.append("eth_call")
        return encode(["uint256"], [self.nonce])

    async def get_code(self, address, block="latest"):
        self.calls.append("eth_getCode")
        return b"\x60\x80" if self.is_deployed else b""

    async def gas_price(self):
        self.calls.append("eth_gasPrice")
        return self._gas_price

    async def max_priority_fee_per_gas(self):
        self.calls.append("eth_maxPriorityFeePerGas")
        return self._max_priority_fee_per_gas

    async def get_balance(self, address, block="latest"):
        self.calls.append("eth_getBalance")
        return 10**18

    async def get_transaction_count(self, address, block="latest"):
        self.calls.append("eth_getTransactionCount")
        return 7

    async def estimate_gas(self, transaction):
        self.calls.append("eth_estimateGas")
        return 21_000

    async def send_transaction(self, transaction):
        self.calls.append("eth_sendTransaction")
        return "forwarded"

    async def send_raw_transaction(self, raw_transaction):
        self.calls.append("eth_sendRawTransaction")
        return "forwarded raw"

    async def get_transaction_receipt(self, transaction_hash):
        self.calls.append("eth_getTransactionReceipt")
        return None


class FakeBundlerClient:
    """Stands in for BundlerClient, computing hashes the way a bundler
    does and replaying scripted receipts."""

    def __init__(
        self,
        endpoint: BundlerEndpoint,
        gas_estimate: GasEstimate | None = None,
        receipts: list | None = None,
        send_error: Exception | None = None,
        estimate_error: Exception | None = None,
    ):
        self.endpoint = endpoint
        self.gas_estimate = gas_estimate or GasEstimate(
            pre_verification_gas=45_000,
            verification_gas_limit=100_000,
            call_gas_limit=30_000,
        )
        self.receipts = list(receipts or [])
        self.send_error = send_error
        self.estimate_error = estimate_error
        self.calls: list[str] = []
        self.estimated_user_operations: list = []
        self.sent_user_operations: list = []

    async def estimate_user_operation_gas(self, user_operation):
        self.calls.append("eth_estimateUserOperationGas")
        self.estimated_user_operations.append(
            user_operation.get_user_operation_json(
                self.endpoint.entrypoint_version))
        if self.estimate_error is not None:
            raise self.estimate_error
        return self.gas_estimate

    async def send_user_operation(self, user_operation):
        self.calls.append("eth_sendUserOperation")
        if self.send_error is not None:
            raise self.send_error
        self.sent_user_operations.append(user_operation)
        return get_user_operation_hash(
            user_operation,
            self.endpoint.entrypoint,
            CHAIN_ID,
            self.endpoint.entrypoint_version,
        )

    async def get_user_operation_receipt(self, user_operation_hash):
        self.calls.append("eth_getUserOperationReceipt")
        if len(self.receipts) == 0:
            return None
        return self.receipts.pop(0)

    @property
    def receipt_polls(self) -> int:
        return self.calls.count("eth_getUserOperationReceipt")


@pytest.fixture
def owner():
    return Account.from_key(OWNER_KEY)


@pytest.fixture
def endpoint():
    return BundlerEndpoint(
        "http://127.0.0.1:3000/rpc", ENTRYPOINT_V06, EntryPointVersion.V06)


@pytest.fixture
def config():
    return MiddlewareConfig(poll_interval=5, poll_timeout=120)


@pytest.fixture
def chain_client():
    return FakeChainClient()


@pytest.fixture
def bundler_client(endpoint):
    return FakeBundlerClient(endpoint)


@pytest.fixture
def sleeps(monkeypatch):
    """Make asyncio.sleep return immediately, recording the delays."""
    delays: list[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays
