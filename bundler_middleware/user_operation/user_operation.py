from dataclasses import dataclass, fields
from enum import Enum
import logging
import re

from eth_utils import to_checksum_address

from bundler_middleware.middleware.exceptions import \
    InvalidConfiguration, ProtocolError
from bundler_middleware.typing import Address


class EntryPointVersion(Enum):
    V06 = "v0.6"
    V07 = "v0.7"

    def __str__(self):
        return self.value


ENTRYPOINT_V06 = Address("0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789")
ENTRYPOINT_V07 = Address("0x0000000071727De22E5E9d8BAf0edAc6f37da032")

DEFAULT_ENTRYPOINTS = {
    EntryPointVersion.V06: ENTRYPOINT_V06,
    EntryPointVersion.V07: ENTRYPOINT_V07,
}

V06_FIELDS = [
    "sender",
    "nonce",
    "initCode",
    "callData",
    "callGasLimit",
    "verificationGasLimit",
    "preVerificationGas",
    "maxFeePerGas",
    "maxPriorityFeePerGas",
    "paymasterAndData",
    "signature",
]

V07_REQUIRED_FIELDS = [
    "sender",
    "nonce",
    "callData",
    "callGasLimit",
    "verificationGasLimit",
    "preVerificationGas",
    "maxFeePerGas",
    "maxPriorityFeePerGas",
    "signature",
]

PAYMASTER_GAS_LIMITS_END = 52


@dataclass()
class UserOperation:
    sender_address: Address
    nonce: int
    init_code: bytes
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    def __setattr__(self, name, value) -> None:
        # any change to a hashed field invalidates an existing signature
        if (
            name != "signature" and
            len(getattr(self, "signature", b"")) > 0 and
            getattr(self, name, None) != value
        ):
            logging.debug(
                f"UserOperation field {name} changed after signing, "
                "dropping signature"
            )
            object.__setattr__(self, "signature", b"")
        object.__setattr__(self, name, value)

    @property
    def is_signed(self) -> bool:
        return len(self.signature) > 0

    @property
    def factory(self) -> Address | None:
        if len(self.init_code) < 20:
            return None
        return Address(to_checksum_address(self.init_code[:20]))

    def to_list(self) -> list[Address | int | bytes]:
        return [getattr(self, f.name) for f in fields(self)]

    def to_packed_list(self) -> list[Address | int | bytes]:
        account_gas_limits = (
            self.verification_gas_limit.to_bytes(16) +
            self.call_gas_limit.to_bytes(16)
        )
        gas_fees = (
            self.max_priority_fee_per_gas.to_bytes(16) +
            self.max_fee_per_gas.to_bytes(16)
        )
        return [
            self.sender_address,
            self.nonce,
            self.init_code,
            self.call_data,
            account_gas_limits,
            self.pre_verification_gas,
            gas_fees,
            self.paymaster_and_data,
            self.signature,
        ]

    def get_user_operation_json(
        self, version: EntryPointVersion
    ) -> dict[str, str]:
        if version == EntryPointVersion.V06:
            return {
                "sender": self.sender_address,
                "nonce": hex(self.nonce),
                "initCode": "0x" + self.init_code.hex(),
                "callData": "0x" + self.call_data.hex(),
                "callGasLimit": hex(self.call_gas_limit),
                "verificationGasLimit": hex(self.verification_gas_limit),
                "preVerificationGas": hex(self.pre_verification_gas),
                "maxFeePerGas": hex(self.max_fee_per_gas),
                "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
                "paymasterAndData": "0x" + self.paymaster_and_data.hex(),
                "signature": "0x" + self.signature.hex(),
            }

        user_operation_json = {
            "sender": self.sender_address,
            "nonce": hex(self.nonce),
            "callData": "0x" + self.call_data.hex(),
            "callGasLimit": hex(self.call_gas_limit),
            "verificationGasLimit": hex(self.verification_gas_limit),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
            "signature": "0x" + self.signature.hex(),
        }
        factory = self.factory
        if factory is not None:
            user_operation_json["factory"] = factory
            user_operation_json["factoryData"] = (
                "0x" + self.init_code[20:].hex())

        if len(self.paymaster_and_data) > 0:
            if len(self.paymaster_and_data) < PAYMASTER_GAS_LIMITS_END:
                raise InvalidConfiguration(
                    "paymasterAndData for entrypoint v0.7 must hold the "
                    "paymaster address and both paymaster gas limits"
                )
            user_operation_json.update({
                "paymaster": to_checksum_address(
                    self.paymaster_and_data[:20]),
                "paymasterVerificationGasLimit": hex(
                    int.from_bytes(self.paymaster_and_data[20:36])),
                "paymasterPostOpGasLimit": hex(
                    int.from_bytes(self.paymaster_and_data[36:52])),
                "paymasterData": "0x" + self.paymaster_and_data[52:].hex(),
            })
        return user_operation_json

    @classmethod
    def from_json(
        cls,
        json_dict: dict[str, str],
        version: EntryPointVersion
    ) -> "UserOperation":
        if version == EntryPointVersion.V06:
            verify_fields_exist(json_dict, V06_FIELDS)
            return cls(
                sender_address=verify_and_get_address(
                    "sender", json_dict["sender"]),
                nonce=verify_and_get_uint("nonce", json_dict["nonce"]),
                init_code=verify_and_get_bytes(
                    "initCode", json_dict["initCode"]),
                call_data=verify_and_get_bytes(
                    "callData", json_dict["callData"]),
                call_gas_limit=verify_and_get_uint(
                    "callGasLimit", json_dict["callGasLimit"]),
                verification_gas_limit=verify_and_get_uint(
                    "verificationGasLimit", json_dict["verificationGasLimit"]),
                pre_verification_gas=verify_and_get_uint(
                    "preVerificationGas", json_dict["preVerificationGas"]),
                max_fee_per_gas=verify_and_get_uint(
                    "maxFeePerGas", json_dict["maxFeePerGas"]),
                max_priority_fee_per_gas=verify_and_get_uint(
                    "maxPriorityFeePerGas", json_dict["maxPriorityFeePerGas"]),
                paymaster_and_data=verify_and_get_bytes(
                    "paymasterAndData", json_dict["paymasterAndData"]),
                signature=verify_and_get_bytes(
                    "signature", json_dict["signature"]),
            )

        verify_fields_exist(json_dict, V07_REQUIRED_FIELDS)
        init_code = b""
        if json_dict.get("factory") is not None:
            init_code = bytes.fromhex(
                verify_and_get_address("factory", json_dict["factory"])[2:])
            if json_dict.get("factoryData") is not None:
                init_code += verify_and_get_bytes(
                    "factoryData", json_dict["factoryData"])

        paymaster_and_data = b""
        if json_dict.get("paymaster") is not None:
            paymaster_and_data = (
                bytes.fromhex(verify_and_get_address(
                    "paymaster", json_dict["paymaster"])[2:]) +
                verify_and_get_uint(
                    "paymasterVerificationGasLimit",
                    json_dict.get("paymasterVerificationGasLimit"),
                ).to_bytes(16) +
                verify_and_get_uint(
                    "paymasterPostOpGasLimit",
                    json_dict.get("paymasterPostOpGasLimit"),
                ).to_bytes(16) +
                verify_and_get_bytes(
                    "paymasterData", json_dict.get("paymasterData", "0x"))
            )

        return cls(
            sender_address=verify_and_get_address(
                "sender", json_dict["sender"]),
            nonce=verify_and_get_uint("nonce", json_dict["nonce"]),
            init_code=init_code,
            call_data=verify_and_get_bytes("callData", json_dict["callData"]),
            call_gas_limit=verify_and_get_uint(
                "callGasLimit", json_dict["callGasLimit"]),
            verification_gas_limit=verify_and_get_uint(
                "verificationGasLimit", json_dict["verificationGasLimit"]),
            pre_verification_gas=verify_and_get_uint(
                "preVerificationGas", json_dict["preVerificationGas"]),
            max_fee_per_gas=verify_and_get_uint(
                "maxFeePerGas", json_dict["maxFeePerGas"]),
            max_priority_fee_per_gas=verify_and_get_uint(
                "maxPriorityFeePerGas", json_dict["maxPriorityFeePerGas"]),
            paymaster_and_data=paymaster_and_data,
            signature=verify_and_get_bytes(
                "signature", json_dict["signature"]),
        )


def verify_fields_exist(
    json_dict: dict[str, str], field_list: list[str]
) -> None:
    for field in field_list:
        if field not in json_dict:
            raise ProtocolError(f"UserOperation missing {field} field")


def is_address(value: object) -> bool:
    address_pattern = "^0x[0-9a-fA-F]{40}$"
    return isinstance(value, str) and re.match(address_pattern, value) is not None


def verify_and_get_address(field_name: str, value: str | None) -> Address:
    if is_address(value):
        return Address(value)  # type: ignore
    raise ProtocolError(
        f"Invalid address value : {value} in field {field_name}")


def verify_and_get_uint(field_name: str, value: str | None) -> int:
    if value is None:
        raise ProtocolError(f"Invalid uint hex value in field {field_name}")

    if value == "0x":
        return 0
    elif isinstance(value, str) and value[:2] == "0x":
        try:
            return int(value, 16)
        except ValueError:
            raise ProtocolError(
                f"Invalid uint hex value : {value} in field {field_name}")
    else:
        raise ProtocolError(
            f"Invalid uint hex value : {value} in field {field_name}")


def verify_and_get_bytes(field_name: str, value: str | None) -> bytes:
    if value is None:
        raise ProtocolError(f"Invalid bytes hex value in field {field_name}")

    if isinstance(value, str) and value[:2] == "0x":
        try:
            return bytes.fromhex(value[2:])
        except ValueError:
            raise ProtocolError(
                f"Invalid bytes hex value : {value} in field {field_name}")
    else:
        raise ProtocolError(
            f"Invalid bytes hex value : {value} in field {field_name}")


def is_user_operation_hash(user_operation_hash: object) -> bool:
    hash_pattern = "^0x[0-9a-fA-F]{64}$"
    return (
        isinstance(user_operation_hash, str)
        and re.match(hash_pattern, user_operation_hash) is not None
    )
