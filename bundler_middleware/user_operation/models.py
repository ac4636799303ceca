from dataclasses import dataclass, field
from typing import Any

from bundler_middleware.eth_client import hex_to_bytes
from bundler_middleware.middleware.exceptions import ProtocolError
from bundler_middleware.typing import Address, TransactionHash, \
    UserOperationHash
from .user_operation import verify_and_get_address, verify_and_get_uint


@dataclass
class TransactionIntent:
    sender: Address | None
    to: Address
    value: int
    data: bytes

    @classmethod
    def from_transaction(cls, transaction: dict[str, Any]) -> "TransactionIntent":
        if transaction.get("to") is None:
            raise ValueError(
                "contract creation can't be routed through a wallet execute call")
        sender = transaction.get("from")
        value = transaction.get("value", 0)
        data = transaction.get("data", b"")
        return cls(
            sender=None if sender is None else Address(sender),
            to=Address(transaction["to"]),
            value=parse_value(value),
            data=hex_to_bytes(data) if isinstance(data, str) else bytes(data),
        )


def parse_value(value: Any) -> int:
    if not isinstance(value, str):
        return int(value)
    if value in ("0x", ""):
        return 0
    return int(value, 16)


@dataclass
class GasEstimate:
    pre_verification_gas: int
    verification_gas_limit: int
    call_gas_limit: int

    @classmethod
    def from_json(cls, result: Any) -> "GasEstimate":
        if not isinstance(result, dict):
            raise ProtocolError(f"Invalid gas estimation result: {result}")
        return cls(
            pre_verification_gas=parse_quantity(
                "preVerificationGas", result.get("preVerificationGas")),
            verification_gas_limit=parse_quantity(
                "verificationGasLimit", result.get("verificationGasLimit")),
            call_gas_limit=parse_quantity(
                "callGasLimit", result.get("callGasLimit")),
        )


@dataclass
class FeeData:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass
class UserOperationReceipt:
    user_operation_hash: UserOperationHash
    sender: Address
    nonce: int
    success: bool
    actual_gas_cost: int
    actual_gas_used: int
    transaction_hash: TransactionHash
    block_number: int
    block_hash: str | None = None
    paymaster: Address | None = None
    reason: str | None = None
    logs: list[dict] = field(default_factory=list)
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_json(cls, result: Any) -> "UserOperationReceipt":
        if not isinstance(result, dict) or not isinstance(
                result.get("receipt"), dict):
            raise ProtocolError(f"Invalid user operation receipt: {result}")
        receipt = result["receipt"]
        transaction_hash = receipt.get("transactionHash")
        if not isinstance(transaction_hash, str):
            raise ProtocolError(
                f"Invalid transactionHash in receipt: {transaction_hash}")
        paymaster = result.get("paymaster")
        return cls(
            user_operation_hash=UserOperationHash(result.get("userOpHash", "")),
            sender=verify_and_get_address("sender", result.get("sender")),
            nonce=parse_quantity("nonce", result.get("nonce")),
            success=bool(result.get("success")),
            actual_gas_cost=parse_quantity(
                "actualGasCost", result.get("actualGasCost", 0)),
            actual_gas_used=parse_quantity(
                "actualGasUsed", result.get("actualGasUsed", 0)),
            transaction_hash=TransactionHash(transaction_hash),
            block_number=parse_quantity(
                "blockNumber", receipt.get("blockNumber")),
            block_hash=receipt.get("blockHash"),
            paymaster=None if paymaster is None else Address(paymaster),
            reason=result.get("reason"),
            logs=result.get("logs", []),
            raw=result,
        )


def parse_quantity(field_name: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return verify_and_get_uint(field_name, value)

