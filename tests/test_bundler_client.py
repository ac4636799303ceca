import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from bundler_middleware.bundler.bundler_client import BundlerClient
from bundler_middleware.eth_client import EthClient
from bundler_middleware.middleware.config import BundlerEndpoint
from bundler_middleware.middleware.exceptions import BundlerErrorCode, \
    BundlerRpcError, ChainClientError, EntryPointNotSupported, \
    ProtocolError, SimulationReverted, TransportError, ValidationRejected
from bundler_middleware.user_operation.user_operation import \
    ENTRYPOINT_V06, ENTRYPOINT_V07, EntryPointVersion, UserOperation
from bundler_middleware.utils.eth_client_utils import send_rpc_request

from conftest import WALLET_ADDRESS

USER_OPERATION_HASH = "0x" + "42" * 32
TRANSACTION_HASH = "0x" + "ab" * 32


class ScriptedRpcServer:
    """Answers each JSON-RPC method with its queued responses in order."""

    def __init__(self):
        self.responses: dict[str, list] = {}
        self.requests: list[dict] = []

    def script(self, method, *responses):
        self.responses.setdefault(method, []).extend(responses)

    def methods(self):
        return [request["method"] for request in self.requests]

    async def handle(self, request: web.Request) -> web.Response:
        json_request = await request.json()
        self.requests.append(json_request)
        response = self.responses[json_request["method"]].pop(0)
        if isinstance(response, web.Response):
            return response
        return web.json_response(
            {"jsonrpc": "2.0", "id": json_request["id"], **response})


@pytest_asyncio.fixture
async def rpc_server():
    scripted = ScriptedRpcServer()
    app = web.Application()
    app.router.add_post("/rpc", scripted.handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    scripted.url = str(server.make_url("/rpc"))
    yield scripted
    await server.close()


def make_bundler_client(rpc_server, version=EntryPointVersion.V06):
    return BundlerClient(
        BundlerEndpoint.for_version(rpc_server.url, version),
        retry_attempts=3,
        backoff_seconds=0,
    )


def user_operation():
    return UserOperation(
        sender_address=WALLET_ADDRESS,
        nonce=1,
        init_code=b"",
        call_data=b"\x01",
        call_gas_limit=0,
        verification_gas_limit=0,
        pre_verification_gas=0,
        max_fee_per_gas=10,
        max_priority_fee_per_gas=1,
        signature=b"\x00" * 65,
    )


@pytest.mark.asyncio
async def test_supported_entrypoints_is_checked_once(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06.lower()]})
    rpc_server.script(
        "eth_getUserOperationReceipt", {"result": None}, {"result": None})
    bundler_client = make_bundler_client(rpc_server)

    assert await bundler_client.get_user_operation_receipt(
        USER_OPERATION_HASH) is None
    assert await bundler_client.get_user_operation_receipt(
        USER_OPERATION_HASH) is None

    assert rpc_server.methods() == [
        "eth_supportedEntryPoints",
        "eth_getUserOperationReceipt",
        "eth_getUserOperationReceipt",
    ]


@pytest.mark.asyncio
async def test_unsupported_entrypoint(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    bundler_client = make_bundler_client(rpc_server, EntryPointVersion.V07)

    with pytest.raises(EntryPointNotSupported) as excinfo:
        await bundler_client.send_user_operation(user_operation())

    assert excinfo.value.entrypoint == ENTRYPOINT_V07
    assert rpc_server.methods() == ["eth_supportedEntryPoints"]


@pytest.mark.asyncio
async def test_send_user_operation(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    rpc_server.script(
        "eth_sendUserOperation", {"result": USER_OPERATION_HASH})
    bundler_client = make_bundler_client(rpc_server)

    assert await bundler_client.send_user_operation(
        user_operation()) == USER_OPERATION_HASH

    params = rpc_server.requests[1]["params"]
    assert params[1] == ENTRYPOINT_V06
    assert params[0]["sender"] == WALLET_ADDRESS
    assert params[0]["maxFeePerGas"] == "0xa"


@pytest.mark.asyncio
async def test_entrypoint_error_is_validation_rejection(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    rpc_server.script("eth_sendUserOperation", {"error": {
        "code": -32500, "message": "AA25 invalid account nonce"}})
    bundler_client = make_bundler_client(rpc_server)

    with pytest.raises(ValidationRejected) as excinfo:
        await bundler_client.send_user_operation(user_operation())

    assert excinfo.value.exception_code == \
        BundlerErrorCode.SimulateValidation
    assert excinfo.value.message == "AA25 invalid account nonce"


@pytest.mark.asyncio
async def test_execution_revert_is_simulation_reverted(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    rpc_server.script("eth_estimateUserOperationGas", {"error": {
        "code": -32521, "message": "execution reverted", "data": "0x1234"}})
    bundler_client = make_bundler_client(rpc_server)

    with pytest.raises(SimulationReverted) as excinfo:
        await bundler_client.estimate_user_operation_gas(user_operation())
    assert excinfo.value.data == "0x1234"


@pytest.mark.asyncio
async def test_unknown_error_code_is_rpc_error(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    rpc_server.script("eth_estimateUserOperationGas", {"error": {
        "code": -32601, "message": "method not found"}})
    bundler_client = make_bundler_client(rpc_server)

    with pytest.raises(BundlerRpcError) as excinfo:
        await bundler_client.estimate_user_operation_gas(user_operation())
    assert excinfo.value.code == -32601
    assert isinstance(excinfo.value, ProtocolError)


@pytest.mark.asyncio
async def test_gas_estimate_is_parsed(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    rpc_server.script("eth_estimateUserOperationGas", {"result": {
        "preVerificationGas": "0xafc8",
        "verificationGasLimit": "0x186a0",
        "callGasLimit": 21000,
    }})
    bundler_client = make_bundler_client(rpc_server)

    gas_estimate = await bundler_client.estimate_user_operation_gas(
        user_operation())

    assert gas_estimate.pre_verification_gas == 45_000
    assert gas_estimate.verification_gas_limit == 100_000
    assert gas_estimate.call_gas_limit == 21_000


@pytest.mark.asyncio
async def test_receipt_is_parsed(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    rpc_server.script("eth_getUserOperationReceipt", {"result": {
        "userOpHash": USER_OPERATION_HASH,
        "entryPoint": ENTRYPOINT_V06,
        "sender": WALLET_ADDRESS,
        "nonce": "0x1",
        "paymaster": None,
        "actualGasCost": "0x10",
        "actualGasUsed": "0x8",
        "success": False,
        "reason": "0x08c379a0",
        "logs": [],
        "receipt": {
            "transactionHash": TRANSACTION_HASH,
            "blockNumber": "0x3039",
            "blockHash": "0x" + "cd" * 32,
        },
    }})
    bundler_client = make_bundler_client(rpc_server)

    receipt = await bundler_client.get_user_operation_receipt(
        USER_OPERATION_HASH)

    assert receipt.transaction_hash == TRANSACTION_HASH
    assert receipt.block_number == 12345
    assert receipt.nonce == 1
    assert receipt.actual_gas_cost == 16
    assert not receipt.success
    assert receipt.reason == "0x08c379a0"


@pytest.mark.asyncio
async def test_malformed_receipt(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    rpc_server.script(
        "eth_getUserOperationReceipt", {"result": {"success": True}})
    bundler_client = make_bundler_client(rpc_server)

    with pytest.raises(ProtocolError):
        await bundler_client.get_user_operation_receipt(USER_OPERATION_HASH)


@pytest.mark.asyncio
async def test_invalid_user_operation_hash_result(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    rpc_server.script("eth_sendUserOperation", {"result": "0x1234"})
    bundler_client = make_bundler_client(rpc_server)

    with pytest.raises(ProtocolError):
        await bundler_client.send_user_operation(user_operation())


@pytest.mark.asyncio
async def test_non_json_body_is_protocol_error(rpc_server):
    rpc_server.script(
        "eth_chainId", web.Response(text="<html>ok</html>", status=200))

    with pytest.raises(ProtocolError):
        await send_rpc_request(rpc_server.url, "eth_chainId", [], 3, 0)
    assert rpc_server.methods() == ["eth_chainId"]


@pytest.mark.asyncio
async def test_unavailable_bundler_is_retried(rpc_server):
    rpc_server.script(
        "eth_chainId",
        *[web.Response(text="unavailable", status=503) for _ in range(3)],
    )

    with pytest.raises(TransportError) as excinfo:
        await send_rpc_request(rpc_server.url, "eth_chainId", [], 3, 0)
    assert excinfo.value.attempts == 3
    assert rpc_server.methods() == ["eth_chainId"] * 3


@pytest.mark.asyncio
async def test_retry_recovers(rpc_server):
    rpc_server.script(
        "eth_chainId",
        web.Response(text="busy", status=429),
        {"result": "0x539"},
    )
    bundler_client = make_bundler_client(rpc_server)

    assert await bundler_client.chain_id() == 1337
    assert len(rpc_server.requests) == 2


@pytest.mark.asyncio
async def test_send_user_operation_is_not_retried(rpc_server):
    rpc_server.script(
        "eth_supportedEntryPoints", {"result": [ENTRYPOINT_V06]})
    rpc_server.script(
        "eth_sendUserOperation",
        web.Response(text="unavailable", status=503),
        {"result": USER_OPERATION_HASH},
    )
    bundler_client = make_bundler_client(rpc_server)

    with pytest.raises(TransportError) as excinfo:
        await bundler_client.send_user_operation(user_operation())

    assert excinfo.value.attempts == 1
    assert rpc_server.methods() == [
        "eth_supportedEntryPoints", "eth_sendUserOperation"]


@pytest.mark.asyncio
async def test_unreachable_bundler():
    with pytest.raises(TransportError):
        await send_rpc_request(
            "http://127.0.0.1:1/rpc", "eth_chainId", [], 2, 0)


@pytest.mark.asyncio
async def test_eth_client_errors(rpc_server):
    rpc_server.script("eth_getCode", {"result": "0x6080"})
    rpc_server.script("eth_call", {"error": {
        "code": 3, "message": "execution reverted", "data": "0x"}})
    rpc_server.script("eth_gasPrice", {"result": None})
    eth_client = EthClient(rpc_server.url, 1, 0)

    assert await eth_client.get_code(WALLET_ADDRESS) == b"\x60\x80"
    with pytest.raises(ChainClientError) as excinfo:
        await eth_client.call({"to": WALLET_ADDRESS, "data": b"\x01"})
    assert excinfo.value.method == "eth_call"
    assert "execution reverted" in excinfo.value.message
    with pytest.raises(ChainClientError):
        await eth_client.gas_price()

    assert rpc_server.requests[1]["params"][0] == {
        "to": WALLET_ADDRESS, "data": "0x01"}
