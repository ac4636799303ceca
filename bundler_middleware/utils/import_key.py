from eth_account import Account
from eth_account.signers.local import LocalAccount


def import_owner_account(
    keystore_file_password, keystore_file_path
) -> LocalAccount:
    with open(keystore_file_path) as keyfile:
        encrypted_key = keyfile.read()
        private_key = Account.decrypt(encrypted_key, keystore_file_password)
        return Account.from_key(private_key)


def owner_account_from_private_key(private_key: str) -> LocalAccount:
    if private_key.startswith("0x"):
        private_key = private_key[2:]
    return Account.from_key(bytes.fromhex(private_key))
