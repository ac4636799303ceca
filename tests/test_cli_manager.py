import json

import pytest
from eth_account import Account

from bundler_middleware import cli_manager
from bundler_middleware.cli_manager import initialize_argument_parser
from bundler_middleware.middleware.config import SignatureScheme
from bundler_middleware.user_operation.user_operation import \
    ENTRYPOINT_V06, ENTRYPOINT_V07, EntryPointVersion

from conftest import FACTORY_INIT_CODE, OWNER_KEY, TARGET_ADDRESS, \
    WALLET_ADDRESS


def test_defaults(monkeypatch):
    monkeypatch.delenv("BUNDLER_MIDDLEWARE_GAS_MARGIN_PERCENTAGE", raising=False)
    args = initialize_argument_parser().parse_args(["--to", TARGET_ADDRESS])

    assert args.entrypoint_version == EntryPointVersion.V06
    assert args.gas_margin_percentage == 10
    assert args.poll_interval == 5
    assert args.poll_timeout == 120
    assert args.signature_scheme == SignatureScheme.eip191
    assert args.legacy_mode is False
    assert args.value == 0
    assert args.data == b""


def test_environment_overrides_defaults(monkeypatch):
    monkeypatch.setenv("BUNDLER_MIDDLEWARE_GAS_MARGIN_PERCENTAGE", "25")
    monkeypatch.setenv("BUNDLER_MIDDLEWARE_LEGACY_MODE", "true")
    monkeypatch.setenv("BUNDLER_MIDDLEWARE_ENTRYPOINT_VERSION", "v0.7")
    monkeypatch.setenv("BUNDLER_MIDDLEWARE_WALLET_ADDRESS", WALLET_ADDRESS)

    args = initialize_argument_parser().parse_args(["--to", TARGET_ADDRESS])

    assert args.gas_margin_percentage == 25
    assert args.legacy_mode is True
    assert args.entrypoint_version == EntryPointVersion.V07
    assert args.wallet_address == WALLET_ADDRESS


def test_command_line_values():
    args = initialize_argument_parser().parse_args([
        "--to", TARGET_ADDRESS,
        "--value", "1000",
        "--data", "0x1234",
        "--entrypoint_version", "v0.7",
        "--signature_scheme", "raw",
        "--init_code", "0x" + FACTORY_INIT_CODE.hex(),
    ])

    assert args.value == 1000
    assert args.data == b"\x12\x34"
    assert args.entrypoint_version == EntryPointVersion.V07
    assert args.signature_scheme == SignatureScheme.raw
    assert args.init_code == FACTORY_INIT_CODE


@pytest.mark.parametrize("cmd_args", [
    [],
    ["--to", "0x1234"],
    ["--to", TARGET_ADDRESS, "--entrypoint_version", "v0.5"],
    ["--to", TARGET_ADDRESS, "--bundler_url", "localhost:3000"],
    ["--to", TARGET_ADDRESS, "--poll_interval", "0"],
    ["--to", TARGET_ADDRESS, "--owner_secret", OWNER_KEY,
     "--keystore_file_path", "keystore/owner"],
])
def test_invalid_arguments(cmd_args):
    with pytest.raises(SystemExit):
        initialize_argument_parser().parse_args(cmd_args)


@pytest.mark.asyncio
async def test_init_data(monkeypatch, owner):
    async def chain_ids_match(ethereum_node_url, endpoint):
        pass

    monkeypatch.setattr(
        cli_manager, "check_chain_ids_match", chain_ids_match)
    args = initialize_argument_parser().parse_args([
        "--to", TARGET_ADDRESS,
        "--owner_secret", OWNER_KEY,
        "--wallet_address", WALLET_ADDRESS,
        "--gas_margin_percentage", "20",
    ])

    init_data = await cli_manager.get_init_data(args)

    assert init_data.owner.address == owner.address
    assert init_data.wallet_address == WALLET_ADDRESS
    assert init_data.endpoint.entrypoint == ENTRYPOINT_V06
    assert init_data.config.gas_margin_percentage == 20
    assert init_data.wait


@pytest.mark.asyncio
async def test_init_data_uses_version_entrypoint(monkeypatch):
    async def chain_ids_match(ethereum_node_url, endpoint):
        pass

    monkeypatch.setattr(
        cli_manager, "check_chain_ids_match", chain_ids_match)
    args = initialize_argument_parser().parse_args([
        "--to", TARGET_ADDRESS,
        "--owner_secret", OWNER_KEY,
        "--wallet_address", WALLET_ADDRESS,
        "--entrypoint_version", "v0.7",
        "--no_wait",
    ])

    init_data = await cli_manager.get_init_data(args)

    assert init_data.endpoint.entrypoint == ENTRYPOINT_V07
    assert not init_data.wait


@pytest.mark.asyncio
async def test_missing_wallet_address_exits(monkeypatch):
    monkeypatch.delenv("BUNDLER_MIDDLEWARE_WALLET_ADDRESS", raising=False)
    args = initialize_argument_parser().parse_args([
        "--to", TARGET_ADDRESS, "--owner_secret", OWNER_KEY])

    with pytest.raises(SystemExit):
        await cli_manager.get_init_data(args)


def test_owner_account_from_keystore_file(tmp_path, owner):
    keystore_file = tmp_path / "owner.json"
    keystore_file.write_text(json.dumps(
        Account.encrypt(OWNER_KEY, "secret", kdf="pbkdf2", iterations=2)))
    args = initialize_argument_parser().parse_args([
        "--to", TARGET_ADDRESS,
        "--keystore_file_path", str(keystore_file),
        "--keystore_file_password", "secret",
    ])

    assert cli_manager.init_owner_account(args).address == owner.address
