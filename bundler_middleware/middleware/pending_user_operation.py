import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import math
from typing import Awaitable, Callable

from bundler_middleware.bundler.bundler_client import BundlerClient
from bundler_middleware.metrics.metrics import USER_OPERATIONS_FINALIZED
from bundler_middleware.middleware.config import BundlerEndpoint
from bundler_middleware.middleware.exceptions import ChainClientError
from bundler_middleware.typing import Address, TransactionHash, \
    UserOperationHash
from bundler_middleware.user_operation.models import UserOperationReceipt
from bundler_middleware.user_operation.user_operation import UserOperation


class DropReason(Enum):
    timeout = "timeout"
    replaced = "replaced"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class Submitted:
    pass


@dataclass(frozen=True)
class Included:
    transaction_hash: TransactionHash
    block_number: int
    receipt: UserOperationReceipt


@dataclass(frozen=True)
class Dropped:
    reason: DropReason


@dataclass(frozen=True)
class Failed:
    reason: str
    error: Exception | None = None


UserOperationStatus = Submitted | Included | Dropped | Failed

NonceReader = Callable[[Address], Awaitable[int]]


class PendingUserOperation:
    """Handle on a UserOperation handed to a bundler.

    The status moves once from Submitted to Included, Dropped or Failed.
    `wait` polls the bundler for the operation receipt every
    `poll_interval` seconds, at most `ceil(poll_timeout / poll_interval)`
    times. A bundler that stops answering can't hold `wait` past
    `poll_timeout + poll_interval`. `cancel` stops the local polling only;
    the bundler keeps the operation.
    """

    user_operation_hash: UserOperationHash
    user_operation: UserOperation
    endpoint: BundlerEndpoint
    status: UserOperationStatus
    was_submitted: bool

    def __init__(
        self,
        user_operation_hash: UserOperationHash,
        user_operation: UserOperation,
        bundler_client: BundlerClient,
        poll_interval: float,
        poll_timeout: float,
        nonce_reader: NonceReader | None = None,
        on_final: Callable[["PendingUserOperation"], None] | None = None,
    ):
        self.user_operation_hash = user_operation_hash
        self.user_operation = user_operation
        self.bundler_client = bundler_client
        self.endpoint = bundler_client.endpoint
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.nonce_reader = nonce_reader
        self.on_final = on_final
        self.status = Submitted()
        self.was_submitted = True
        self._cancelled = False
        self._poll_task: asyncio.Task | None = None

    @classmethod
    def rejected(
        cls,
        user_operation_hash: UserOperationHash,
        user_operation: UserOperation,
        bundler_client: BundlerClient,
        error: Exception,
    ) -> "PendingUserOperation":
        pending = cls(user_operation_hash, user_operation, bundler_client, 1, 1)
        pending.status = Failed(describe_error(error), error)
        pending.was_submitted = False
        return pending

    @property
    def max_polls(self) -> int:
        return max(math.ceil(self.poll_timeout / self.poll_interval), 1)

    @property
    def is_final(self) -> bool:
        return not isinstance(self.status, Submitted)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    async def wait(self) -> UserOperationStatus:
        if self.is_final or self._cancelled:
            return self.status
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_until_final())
        try:
            await asyncio.shield(self._poll_task)
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
        return self.status

    def cancel(self) -> None:
        if self.is_final or self._cancelled:
            return
        logging.info(
            f"stopped polling for user operation {self.user_operation_hash}")
        self._cancelled = True
        if self._poll_task is not None:
            self._poll_task.cancel()
        if self.on_final is not None:
            self.on_final(self)

    async def _poll_until_final(self) -> None:
        # the last poll gets one interval to answer, slow calls are cut off
        deadline = (
            asyncio.get_running_loop().time() +
            self.poll_timeout + self.poll_interval
        )
        timeout = asyncio.timeout_at(deadline)
        try:
            async with timeout:
                for _ in range(self.max_polls):
                    await asyncio.sleep(self.poll_interval)
                    receipt = \
                        await self.bundler_client.get_user_operation_receipt(
                            self.user_operation_hash)
                    if receipt is not None:
                        self._set_included(receipt)
                        return
                    if await self._is_replaced():
                        self._finalize(Dropped(DropReason.replaced))
                        return
                    if self.is_final:
                        return
        except TimeoutError as excp:
            if not timeout.expired():
                self._fail(excp)
                return
            logging.warning(
                f"polling for user operation {self.user_operation_hash} "
                f"cut off after {self.poll_timeout}s")
        except asyncio.CancelledError:
            raise
        except Exception as excp:
            self._fail(excp)
            return
        self._finalize(Dropped(DropReason.timeout))

    def _fail(self, excp: Exception) -> None:
        logging.exception(
            f"polling for user operation {self.user_operation_hash} failed")
        self._finalize(Failed(describe_error(excp), excp))

    async def _is_replaced(self) -> bool:
        """True when the wallet nonce moved past this operation's nonce
        without this operation being included."""
        if self.nonce_reader is None:
            return False
        try:
            onchain_nonce = await self.nonce_reader(
                self.user_operation.sender_address)
        except ChainClientError as excp:
            logging.debug(
                f"could not read nonce of {self.user_operation.sender_address}"
                f": {excp.message}")
            return False
        if onchain_nonce <= self.user_operation.nonce:
            return False

        # the nonce may have moved because this operation was just included
        receipt = await self.bundler_client.get_user_operation_receipt(
            self.user_operation_hash)
        if receipt is not None:
            self._set_included(receipt)
            return False
        return True

    def _set_included(self, receipt: UserOperationReceipt) -> None:
        if not receipt.success:
            logging.warning(
                f"user operation {self.user_operation_hash} included in "
                f"{receipt.transaction_hash} but its execution reverted"
                + ("" if receipt.reason is None else f": {receipt.reason}")
            )
        self._finalize(Included(
            receipt.transaction_hash, receipt.block_number, receipt))

    def _finalize(self, status: UserOperationStatus) -> None:
        if self.is_final:
            return
        self.status = status
        USER_OPERATIONS_FINALIZED.labels(type(status).__name__).inc()
        logging.info(
            f"user operation {self.user_operation_hash} is final: {status}")
        if self.on_final is not None:
            self.on_final(self)

    def __repr__(self) -> str:
        return (
            f"<PendingUserOperation {self.user_operation_hash} {self.status}>")


def describe_error(error: Exception) -> str:
    message = getattr(error, "message", None)
    return f"{type(error).__name__}: {message if message else error}"
