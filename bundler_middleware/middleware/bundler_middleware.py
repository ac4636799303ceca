import asyncio
from enum import Enum
import logging
from typing import Any

from eth_account.signers.local import LocalAccount

from bundler_middleware.bundler.bundler_client import BundlerClient
from bundler_middleware.eth_client import ChainClient, PendingTransaction
from bundler_middleware.gas.gas_resolver import GasResolver, \
    call_chain_client
from bundler_middleware.metrics.metrics import USER_OPERATIONS_REJECTED, \
    USER_OPERATIONS_SUBMITTED
from bundler_middleware.middleware.config import BundlerEndpoint, \
    MiddlewareConfig
from bundler_middleware.middleware.exceptions import InvalidConfiguration, \
    NonceInFlight, ProtocolError, SimulationReverted, TransportError, \
    ValidationRejected
from bundler_middleware.middleware.pending_user_operation import \
    PendingUserOperation
from bundler_middleware.signer.signer import OwnerSigner, resolve_signer
from bundler_middleware.typing import Address, TransactionHash
from bundler_middleware.user_operation.models import TransactionIntent
from bundler_middleware.user_operation.user_operation_hash import \
    get_user_operation_hash


class PipelineStage(Enum):
    building = "building"
    estimated = "estimated"
    signed = "signed"
    submitted = "submitted"

    def __str__(self):
        return self.value


class BundlerMiddleware(ChainClient):
    """Routes transactions sent from a smart contract wallet through an
    ERC-4337 bundler.

    A transaction whose `from` differs from the owner's address is turned
    into a UserOperation for that wallet, signed by the owner and sent to
    the bundler; `send_transaction` then returns a PendingUserOperation.
    Every other call is forwarded unchanged to the wrapped client.
    """

    inner: ChainClient
    endpoint: BundlerEndpoint
    config: MiddlewareConfig
    owner: LocalAccount
    wallet_address: Address | None
    bundler_client: BundlerClient
    gas_resolver: GasResolver

    def __init__(
        self,
        inner: ChainClient,
        endpoint: BundlerEndpoint,
        owner: LocalAccount,
        config: MiddlewareConfig | None = None,
        wallet_address: Address | None = None,
        bundler_client: BundlerClient | None = None,
    ):
        self.inner = inner
        self.endpoint = endpoint
        self.config = MiddlewareConfig() if config is None else config
        self.owner = owner
        self.wallet_address = wallet_address
        if bundler_client is None:
            bundler_client = BundlerClient(
                endpoint,
                self.config.retry_attempts,
                self.config.backoff_seconds,
            )
        self.bundler_client = bundler_client
        self.gas_resolver = GasResolver(
            inner, self.bundler_client, self.config)
        self._signers: dict[str, OwnerSigner] = {}
        self._chain_id: int | None = None
        # (sender, nonce) -> loop time the reservation lapses at
        self._in_flight: dict[tuple[str, int], float] = {}

        if wallet_address is not None:
            self.get_signer(wallet_address)

    @property
    def address(self) -> Address:
        return Address(self.owner.address)

    def get_signer(self, sender: Address) -> OwnerSigner:
        signer = self._signers.get(sender.lower())
        if signer is None:
            signer = resolve_signer(
                self.owner, sender, self.config.signature_scheme)
            self._signers[sender.lower()] = signer
        return signer

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await call_chain_client(
                "eth_chainId", self.inner.chain_id())
        return self._chain_id

    def is_user_operation_transaction(self, transaction: dict[str, Any]) -> bool:
        sender = transaction.get("from")
        return sender is not None and sender.lower() != self.address.lower()

    async def send_transaction(
        self, transaction: dict[str, Any]
    ) -> PendingUserOperation | Any:
        if not self.is_user_operation_transaction(transaction):
            return await self.inner.send_transaction(transaction)
        logging.info(
            f"Sending transaction from {transaction['from']} as a user "
            "operation")
        return await self.send_user_operation(transaction)

    async def send_user_operation(
        self,
        transaction: dict[str, Any],
        wallet_address: Address | None = None,
    ) -> PendingUserOperation:
        """Build, sign and submit a UserOperation for `transaction`.

        Failures before submission are raised and nothing is sent. A
        bundler refusing the operation yields a handle in the Failed state
        that was never submitted.
        """
        sender = wallet_address or transaction.get("from") or \
            self.wallet_address
        if sender is None:
            raise InvalidConfiguration(
                "no wallet address to send the user operation from")
        signer = self.get_signer(Address(sender))
        intent = TransactionIntent.from_transaction(transaction)

        logging.debug(f"user operation for {sender}: {PipelineStage.building}")
        user_operation = await self.gas_resolver.resolve(intent, signer.sender)
        in_flight_key, reserved_until = self._reserve_nonce(
            signer.sender, user_operation.nonce)
        try:
            logging.debug(
                f"user operation for {sender}: {PipelineStage.estimated}")
            user_operation_hash = get_user_operation_hash(
                user_operation,
                self.endpoint.entrypoint,
                await self.get_chain_id(),
                self.endpoint.entrypoint_version,
            )
            user_operation.signature = signer.sign(user_operation_hash)
            logging.debug(
                f"user operation {user_operation_hash}: {PipelineStage.signed}")

            try:
                bundler_user_operation_hash = \
                    await self.bundler_client.send_user_operation(
                        user_operation)
            except (
                ValidationRejected,
                SimulationReverted,
                ProtocolError,
                TransportError,
            ) as excp:
                logging.error(
                    f"bundler refused user operation {user_operation_hash}: "
                    f"{excp}")
                USER_OPERATIONS_REJECTED.inc()
                self._release_nonce(in_flight_key, reserved_until)
                return PendingUserOperation.rejected(
                    user_operation_hash,
                    user_operation,
                    self.bundler_client,
                    excp,
                )
        except BaseException:
            self._release_nonce(in_flight_key, reserved_until)
            raise

        if bundler_user_operation_hash.lower() != user_operation_hash.lower():
            logging.warning(
                f"bundler returned user operation hash "
                f"{bundler_user_operation_hash}, expected "
                f"{user_operation_hash}. check the entrypoint version and "
                "chain id configuration"
            )
        USER_OPERATIONS_SUBMITTED.inc()
        reserved_until = self._in_flight[in_flight_key] = \
            self._reservation_deadline()
        logging.info(
            f"user operation {bundler_user_operation_hash} "
            f"{PipelineStage.submitted} to {self.endpoint.url}")
        return PendingUserOperation(
            bundler_user_operation_hash,
            user_operation,
            self.bundler_client,
            self.config.poll_interval,
            self.config.poll_timeout,
            nonce_reader=self.gas_resolver.get_wallet_nonce,
            on_final=lambda pending: self._release_nonce(
                in_flight_key, reserved_until),
        )

    def _reservation_deadline(self) -> float:
        return (
            asyncio.get_running_loop().time() +
            self.config.poll_timeout + self.config.poll_interval
        )

    def _reserve_nonce(
        self, sender: Address, nonce: int
    ) -> tuple[tuple[str, int], float]:
        """Claim (sender, nonce) until its handle is final or, for a handle
        nobody waits on, until the polling timeout has passed."""
        now = asyncio.get_running_loop().time()
        for key, reserved_until in list(self._in_flight.items()):
            if reserved_until <= now:
                del self._in_flight[key]

        in_flight_key = (sender.lower(), nonce)
        if in_flight_key in self._in_flight:
            raise NonceInFlight(sender, nonce)
        reserved_until = self._in_flight[in_flight_key] = \
            self._reservation_deadline()
        return in_flight_key, reserved_until

    def _release_nonce(
        self, in_flight_key: tuple[str, int], reserved_until: float
    ) -> None:
        if self._in_flight.get(in_flight_key) == reserved_until:
            del self._in_flight[in_flight_key]

    async def chain_id(self) -> int:
        return await self.inner.chain_id()

    async def call(
        self, transaction: dict[str, Any], block: str = "latest"
    ) -> bytes:
        return await self.inner.call(transaction, block)

    async def get_code(self, address: Address, block: str = "latest") -> bytes:
        return await self.inner.get_code(address, block)

    async def gas_price(self) -> int:
        return await self.inner.gas_price()

    async def max_priority_fee_per_gas(self) -> int:
        return await self.inner.max_priority_fee_per_gas()

    async def get_balance(self, address: Address, block: str = "latest") -> int:
        return await self.inner.get_balance(address, block)

    async def get_transaction_count(
        self, address: Address, block: str = "latest"
    ) -> int:
        return await self.inner.get_transaction_count(address, block)

    async def estimate_gas(self, transaction: dict[str, Any]) -> int:
        return await self.inner.estimate_gas(transaction)

    async def send_raw_transaction(
        self, raw_transaction: bytes | str
    ) -> PendingTransaction:
        return await self.inner.send_raw_transaction(raw_transaction)

    async def get_transaction_receipt(
        self, transaction_hash: TransactionHash
    ) -> dict | None:
        return await self.inner.get_transaction_receipt(transaction_hash)
