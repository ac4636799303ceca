import asyncio
import logging
import sys

import uvloop

from bundler_middleware.eth_client import EthClient
from bundler_middleware.metrics.metrics import run_metrics_server
from bundler_middleware.middleware.bundler_middleware import BundlerMiddleware
from bundler_middleware.middleware.pending_user_operation import Failed, \
    Included

from .cli_manager import parse_args


async def main(cmd_args=sys.argv[1:]) -> int:
    init_data = await parse_args(cmd_args)

    if init_data.is_metrics:
        run_metrics_server(
            host=init_data.metrics_host,
            port=init_data.metrics_port,
        )

    middleware = BundlerMiddleware(
        EthClient(
            init_data.ethereum_node_url,
            init_data.config.retry_attempts,
            init_data.config.backoff_seconds,
        ),
        init_data.endpoint,
        init_data.owner,
        init_data.config,
        init_data.wallet_address,
    )

    pending_user_operation = await middleware.send_transaction({
        "from": init_data.wallet_address,
        "to": init_data.to,
        "value": init_data.value,
        "data": init_data.data,
    })
    print(f"user operation hash : {pending_user_operation.user_operation_hash}")

    if not init_data.wait:
        return 1 if isinstance(pending_user_operation.status, Failed) else 0

    status = await pending_user_operation.wait()
    if isinstance(status, Included):
        print(f"transaction hash : {status.transaction_hash}")
        print(f"block number : {status.block_number}")
        return 0
    logging.error(f"user operation not included: {status}")
    print(f"status : {status}")
    return 1


def run() -> None:
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
    sys.exit(asyncio.run(main()))
