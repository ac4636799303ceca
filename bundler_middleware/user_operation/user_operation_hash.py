from eth_abi import encode
from eth_utils import keccak

from bundler_middleware.typing import Address, UserOperationHash
from .user_operation import EntryPointVersion, UserOperation

V06_PACKED_TYPES = [
    "address",
    "uint256",
    "bytes32",
    "bytes32",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "uint256",
    "bytes32",
]

V06_TUPLE_TYPE = (
    "(address,uint256,bytes,bytes,uint256,uint256,uint256,uint256,uint256,"
    "bytes,bytes)"
)

V07_PACKED_TYPES = [
    "address",
    "uint256",
    "bytes32",
    "bytes32",
    "bytes32",
    "uint256",
    "bytes32",
    "bytes32",
]

V07_TUPLE_TYPE = (
    "(address,uint256,bytes,bytes,bytes32,uint256,bytes32,bytes,bytes)"
)


def pack_user_operation(
    user_operation: UserOperation, version: EntryPointVersion
) -> bytes:
    """ABI encoding of the operation without its signature, with every
    dynamic byte field replaced by its keccak hash. This is the preimage the
    EntryPoint hashes in getUserOpHash."""
    if version == EntryPointVersion.V06:
        user_operation_list = user_operation.to_list()
        user_operation_list[2] = keccak(user_operation_list[2])  # initCode
        user_operation_list[3] = keccak(user_operation_list[3])  # callData
        user_operation_list[9] = keccak(user_operation_list[9])  # paymasterAndData
        return encode(V06_PACKED_TYPES, user_operation_list[:-1])

    user_operation_list = user_operation.to_packed_list()
    user_operation_list[2] = keccak(user_operation_list[2])  # initCode
    user_operation_list[3] = keccak(user_operation_list[3])  # callData
    user_operation_list[7] = keccak(user_operation_list[7])  # paymasterAndData
    return encode(V07_PACKED_TYPES, user_operation_list[:-1])


def encode_user_operation(
    user_operation: UserOperation, version: EntryPointVersion
) -> bytes:
    """Full tuple encoding, signature included, as passed to handleOps."""
    if version == EntryPointVersion.V06:
        return encode([V06_TUPLE_TYPE], [user_operation.to_list()])
    return encode([V07_TUPLE_TYPE], [user_operation.to_packed_list()])


def get_user_operation_hash(
    user_operation: UserOperation,
    entrypoint_addr: Address,
    chain_id: int,
    version: EntryPointVersion,
) -> UserOperationHash:
    packed_user_operation_hash = keccak(
        pack_user_operation(user_operation, version)
    )
    encoded_user_operation_hash = encode(
        ["(bytes32,address,uint256)"],
        [[packed_user_operation_hash, entrypoint_addr, chain_id]],
    )
    return UserOperationHash(
        "0x" + keccak(encoded_user_operation_hash).hex())
