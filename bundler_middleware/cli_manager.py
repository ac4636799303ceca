import os
import logging
import re
import sys
from argparse import ArgumentParser, Namespace, ArgumentTypeError
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version

from eth_account.signers.local import LocalAccount

from bundler_middleware.bundler.bundler_client import BundlerClient
from bundler_middleware.eth_client import EthClient
from bundler_middleware.middleware.config import BundlerEndpoint, \
    MiddlewareConfig, SignatureScheme
from bundler_middleware.middleware.exceptions import ChainClientError, \
    InvalidConfiguration, ProtocolError, TransportError
from bundler_middleware.user_operation.user_operation import \
    DEFAULT_ENTRYPOINTS, EntryPointVersion

from .typing import Address
from .utils.import_key import (import_owner_account,
                               owner_account_from_private_key)

try:
    __version__ = version("bundler_middleware")
except PackageNotFoundError:
    __version__ = "unknown"


@dataclass()
class InitData:
    ethereum_node_url: str
    endpoint: BundlerEndpoint
    config: MiddlewareConfig
    owner: LocalAccount
    wallet_address: Address
    to: Address
    value: int
    data: bytes
    wait: bool
    is_metrics: bool
    metrics_host: str
    metrics_port: int


def address(ep: str):
    address_pattern = "^0x[0-9,a-f,A-F]{40}$"
    if not isinstance(ep, str) or re.match(address_pattern, ep) is None:
        raise ArgumentTypeError(f"Wrong address format : {ep}")
    return ep


def unsigned_int(value):
    ivalue = int(value)
    if ivalue < 0:
        raise ArgumentTypeError(
                "%s is an invalid unsigned int value" % value)
    return ivalue


def positive_float(value):
    fvalue = float(value)
    if fvalue <= 0:
        raise ArgumentTypeError(
                "%s is an invalid positive value" % value)
    return fvalue


def url(ep: str):
    url_pattern = "^https?://[^\\s/$.?#][^\\s]*$"
    if not isinstance(ep, str) or re.match(url_pattern, ep) is None:
        raise ArgumentTypeError(f"Wrong url format : {ep}")
    return ep


def hex_bytes(value: str) -> bytes:
    if not isinstance(value, str) or value[:2] != "0x":
        raise ArgumentTypeError(f"Wrong hex bytes format : {value}")
    try:
        return bytes.fromhex(value[2:])
    except ValueError:
        raise ArgumentTypeError(f"Wrong hex bytes format : {value}")


def _get_env_or_default(env_var, default, value_type):
    """
    Helper function to get the value from an environment variable or return
    the default value.
    """
    value = os.getenv(env_var, None)
    if value is not None:
        if value_type == bool:
            return value.lower() in ("1", "true", "yes")
        return value_type(value)
    return default


def initialize_argument_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="bundler-middleware",
        description=(
            "Send a transaction from an ERC-4337 smart contract wallet "
            "through a bundler"
        ),
    )

    group = parser.add_mutually_exclusive_group(required=False)

    group.add_argument(
        "--owner_secret",
        type=str,
        help="Wallet owner private key",
        nargs="?",
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_OWNER_SECRET", None, str),
    )

    group.add_argument(
        "--keystore_file_path",
        type=str,
        help="Wallet owner keystore file path",
        nargs="?",
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_KEYSTORE_FILE_PATH", None, str),
    )

    parser.add_argument(
        "--keystore_file_password",
        type=str,
        help="Wallet owner keystore file password - defaults to no password",
        nargs="?",
        const="",
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_KEYSTORE_FILE_PASSWORD", "", str),
    )

    parser.add_argument(
        "--ethereum_node_url",
        type=url,
        help="Eth Client JSON-RPC Url - defaults to http://localhost:8545",
        nargs="?",
        const="http://localhost:8545",
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_ETHEREUM_NODE_URL",
            "http://localhost:8545", str),
    )

    parser.add_argument(
        "--bundler_url",
        type=url,
        help="Bundler JSON-RPC Url - defaults to http://localhost:3000/rpc",
        nargs="?",
        const="http://localhost:3000/rpc",
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_BUNDLER_URL",
            "http://localhost:3000/rpc", str),
    )

    parser.add_argument(
        "--entrypoint_version",
        type=EntryPointVersion,
        choices=list(EntryPointVersion),
        help="EntryPoint version served by the bundler - defaults to v0.6",
        nargs="?",
        const=EntryPointVersion.V06,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_ENTRYPOINT_VERSION",
            EntryPointVersion.V06, EntryPointVersion),
    )

    parser.add_argument(
        "--entrypoint",
        type=address,
        help=(
            "EntryPoint address - defaults to the canonical deployment of "
            "the selected version"
        ),
        nargs="?",
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_ENTRYPOINT", None, address),
    )

    parser.add_argument(
        "--wallet_address",
        type=address,
        help="Smart contract wallet to send from",
        nargs="?",
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_WALLET_ADDRESS", None, address),
    )

    parser.add_argument(
        "--init_code",
        type=hex_bytes,
        help=(
            "Wallet deployment init code (factory address + factory call "
            "data), used when the wallet is not deployed yet"
        ),
        nargs="?",
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_INIT_CODE", None, hex_bytes),
    )

    parser.add_argument(
        "--gas_margin_percentage",
        type=unsigned_int,
        help=(
            "Safety margin added on top of the bundler gas estimates "
            "- defaults to 10"
        ),
        nargs="?",
        const=10,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_GAS_MARGIN_PERCENTAGE", 10, unsigned_int),
    )

    parser.add_argument(
        "--max_fee_per_gas_percentage_multiplier",
        type=unsigned_int,
        help="Modify the network gas price - defaults to 100",
        nargs="?",
        const=100,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_MAX_FEE_PER_GAS_PERCENTAGE_MULTIPLIER",
            100, unsigned_int),
    )

    parser.add_argument(
        "--max_priority_fee_per_gas_percentage_multiplier",
        type=unsigned_int,
        help="Modify the network priority fee - defaults to 100",
        nargs="?",
        const=100,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_MAX_PRIORITY_FEE_PER_GAS_PERCENTAGE_MULTIPLIER",
            100, unsigned_int),
    )

    parser.add_argument(
        "--legacy_mode",
        help="for networks that don't support EIP-1559",
        nargs="?",
        const=True,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_LEGACY_MODE", False, bool),
    )

    parser.add_argument(
        "--signature_scheme",
        type=SignatureScheme,
        choices=list(SignatureScheme),
        help=(
            "How the owner signs the user operation hash - eip191 "
            "(personal_sign, default) or raw"
        ),
        nargs="?",
        const=SignatureScheme.eip191,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_SIGNATURE_SCHEME",
            SignatureScheme.eip191, SignatureScheme),
    )

    parser.add_argument(
        "--poll_interval",
        type=positive_float,
        help="Seconds between receipt polls - defaults to 5",
        nargs="?",
        const=5,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_POLL_INTERVAL", 5, positive_float),
    )

    parser.add_argument(
        "--poll_timeout",
        type=positive_float,
        help="Seconds to wait for a receipt - defaults to 120",
        nargs="?",
        const=120,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_POLL_TIMEOUT", 120, positive_float),
    )

    parser.add_argument(
        "--retry_attempts",
        type=unsigned_int,
        help="Attempts for a failed JSON-RPC request - defaults to 3",
        nargs="?",
        const=3,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_RETRY_ATTEMPTS", 3, unsigned_int),
    )

    parser.add_argument(
        "--to",
        type=address,
        help="Transaction destination",
        required=True,
    )

    parser.add_argument(
        "--value",
        type=unsigned_int,
        help="Transaction value in wei - defaults to 0",
        nargs="?",
        const=0,
        default=0,
    )

    parser.add_argument(
        "--data",
        type=hex_bytes,
        help="Transaction call data - defaults to 0x",
        nargs="?",
        const=b"",
        default=b"",
    )

    parser.add_argument(
        "--no_wait",
        help="Return after submission without waiting for the receipt",
        nargs="?",
        const=True,
        default=False,
    )

    parser.add_argument(
        "--verbose",
        help="show debug log",
        nargs="?",
        const=True,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_VERBOSE", False, bool),
    )

    parser.add_argument(
        "--metrics",
        help="enable metrics collection",
        nargs="?",
        const=True,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_METRICS", False, bool),
    )

    parser.add_argument(
        "--metrics_host",
        type=str,
        help="metrics server host - defaults to localhost",
        nargs="?",
        const="localhost",
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_METRICS_HOST", "localhost", str),
    )

    parser.add_argument(
        "--metrics_port",
        type=unsigned_int,
        help="metrics server port - defaults to 8000",
        nargs="?",
        const=8000,
        default=_get_env_or_default(
            "BUNDLER_MIDDLEWARE_METRICS_PORT", 8000, unsigned_int),
    )

    return parser


def init_logging(args: Namespace):
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%b %d %H:%M:%S",
    )


def init_owner_account(args: Namespace) -> LocalAccount:
    if args.keystore_file_path is not None:
        return import_owner_account(
            args.keystore_file_password, args.keystore_file_path
        )
    if args.owner_secret is None:
        logging.critical("Either owner_secret or keystore_file_path is required")
        sys.exit(1)
    return owner_account_from_private_key(args.owner_secret)


async def check_chain_ids_match(
    ethereum_node_url: str, endpoint: BundlerEndpoint
) -> None:
    try:
        node_chain_id = await EthClient(ethereum_node_url).chain_id()
    except ChainClientError as excp:
        logging.critical(
            f"Error when connecting to Eth node {ethereum_node_url}: "
            f"{excp.message}")
        sys.exit(1)
    try:
        bundler_chain_id = await BundlerClient(endpoint).chain_id()
    except (TransportError, ProtocolError) as excp:
        logging.critical(
            f"Error when connecting to bundler {endpoint.url}: {excp.message}")
        sys.exit(1)
    if node_chain_id != bundler_chain_id:
        logging.critical(
            f"Eth node chain id {node_chain_id} not equal "
            f"bundler chain id {bundler_chain_id}"
        )
        sys.exit(1)


async def get_init_data(args: Namespace) -> InitData:
    init_logging(args)

    if args.wallet_address is None:
        logging.critical("wallet_address is required")
        sys.exit(1)

    entrypoint = args.entrypoint
    if entrypoint is None:
        entrypoint = DEFAULT_ENTRYPOINTS[args.entrypoint_version]

    try:
        endpoint = BundlerEndpoint(
            args.bundler_url, Address(entrypoint), args.entrypoint_version)
        config = MiddlewareConfig(
            gas_margin_percentage=args.gas_margin_percentage,
            max_fee_per_gas_percentage_multiplier=(
                args.max_fee_per_gas_percentage_multiplier),
            max_priority_fee_per_gas_percentage_multiplier=(
                args.max_priority_fee_per_gas_percentage_multiplier),
            is_legacy_mode=args.legacy_mode,
            poll_interval=args.poll_interval,
            poll_timeout=args.poll_timeout,
            signature_scheme=args.signature_scheme,
            init_code=args.init_code,
            retry_attempts=max(args.retry_attempts, 1),
        )
    except InvalidConfiguration as excp:
        logging.critical(excp.message)
        sys.exit(1)

    await check_chain_ids_match(args.ethereum_node_url, endpoint)

    ret = InitData(
        args.ethereum_node_url,
        endpoint,
        config,
        init_owner_account(args),
        Address(args.wallet_address),
        Address(args.to),
        args.value,
        args.data,
        not args.no_wait,
        args.metrics,
        args.metrics_host,
        args.metrics_port,
    )

    if args.verbose:
        print("version : " + __version__)

    logging.info(
        f"Sending from wallet {ret.wallet_address} through bundler "
        f"{endpoint.url} (entrypoint {endpoint.entrypoint} "
        f"{endpoint.entrypoint_version})"
    )
    return ret


async def parse_args(cmd_args: list[str]) -> InitData:
    argument_parser: ArgumentParser = initialize_argument_parser()
    parsed_args = argument_parser.parse_args(cmd_args)

    init_data = await get_init_data(parsed_args)
    return init_data
