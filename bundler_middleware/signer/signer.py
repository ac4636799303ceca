from dataclasses import dataclass
import logging

from eth_account import Account, messages
from eth_account.signers.local import LocalAccount
from eth_keys.exceptions import BadSignature

from bundler_middleware.middleware.config import SignatureScheme
from bundler_middleware.middleware.exceptions import \
    InvalidSignerConfiguration
from bundler_middleware.typing import Address, UserOperationHash


@dataclass(frozen=True)
class OwnerSigner:
    """The signer owns the wallet and signs operations on its behalf."""
    account: LocalAccount
    sender: Address
    signature_scheme: SignatureScheme = SignatureScheme.eip191

    @property
    def address(self) -> Address:
        return Address(self.account.address)

    def sign(self, user_operation_hash: UserOperationHash) -> bytes:
        digest = bytes.fromhex(user_operation_hash[2:])
        if self.signature_scheme == SignatureScheme.eip191:
            signed_message = self.account.sign_message(
                messages.encode_defunct(primitive=digest))
        else:
            signed_message = self.account.unsafe_sign_hash(digest)
        logging.debug(
            f"signed {user_operation_hash} with owner {self.address}")
        return bytes(signed_message.signature)


def resolve_signer(
    account: LocalAccount,
    sender: Address,
    signature_scheme: SignatureScheme = SignatureScheme.eip191,
) -> OwnerSigner:
    """Pick the signer mode for a wallet once, when it is configured.

    A smart contract wallet can't hold a private key, so an account whose
    address is the wallet itself is rejected.
    """
    if account.address.lower() == sender.lower():
        raise InvalidSignerConfiguration(
            f"signer {account.address} is the wallet itself, "
            "a smart contract wallet must be signed for by its owner"
        )
    return OwnerSigner(account, sender, signature_scheme)


def recover_signer(
    user_operation_hash: UserOperationHash,
    signature: bytes,
    signature_scheme: SignatureScheme = SignatureScheme.eip191,
) -> Address:
    digest = bytes.fromhex(user_operation_hash[2:])
    if signature_scheme == SignatureScheme.eip191:
        return Address(Account.recover_message(
            messages.encode_defunct(primitive=digest), signature=signature))
    return Address(Account._recover_hash(digest, signature=signature))


def verify_signature(
    user_operation_hash: UserOperationHash,
    signature: bytes,
    owner: Address,
    signature_scheme: SignatureScheme = SignatureScheme.eip191,
) -> bool:
    if len(signature) == 0:
        return False
    try:
        recovered = recover_signer(
            user_operation_hash, signature, signature_scheme)
    except (BadSignature, ValueError):
        return False
    return recovered.lower() == owner.lower()
