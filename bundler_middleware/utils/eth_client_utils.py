import asyncio
import json
import logging
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

from bundler_middleware.middleware.exceptions import ProtocolError, \
    TransportError

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

RETRYABLE_HTTP_STATUSES = frozenset([429, 502, 503, 504])


async def send_rpc_request(
    url: str,
    method: str,
    params: list | None = None,
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """Post a JSON-RPC request and return the decoded response object.

    Connection failures and retryable HTTP statuses are retried with
    exponential backoff, at most `retry_attempts` times, and then raised as
    TransportError. A body that is not a JSON-RPC response raises
    ProtocolError immediately. JSON-RPC error objects are returned as is,
    classifying them is left to the caller.
    """
    json_request = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": method,
        "params": [] if params is None else params,
    }
    headers = {
        "content-type": "application/json",
        "connection": "keep-alive"
    }
    attempts = max(retry_attempts, 1)
    last_error = ""
    for i in range(attempts):
        if i > 0:
            delay = backoff_seconds * 2 ** (i - 1)
            logging.info(
                f"retrying {method} in {delay}s, attempt {i + 1}/{attempts}")
            await asyncio.sleep(delay)
        try:
            async with ClientSession(
                timeout=ClientTimeout(total=request_timeout)
            ) as session:
                async with session.post(
                    url,
                    json=json_request,
                    headers=headers
                ) as response:
                    status = response.status
                    resp = await response.read()
        except (ClientError, asyncio.TimeoutError) as excp:
            last_error = f"{type(excp).__name__}: {excp}"
            logging.error(
                f"Attempt No. {i+1} to call {method} at {url} failed. "
                f"error: {last_error}"
            )
            continue

        try:
            json_result = json.loads(resp)
        except (json.decoder.JSONDecodeError, UnicodeDecodeError):
            if status in RETRYABLE_HTTP_STATUSES or status >= 500:
                last_error = f"HTTP {status}"
                logging.error(
                    f"Attempt No. {i+1} to call {method} at {url} failed "
                    f"with HTTP status {status}."
                )
                continue
            raise ProtocolError(
                f"Invalid json response for {method} (HTTP {status})")

        if not isinstance(json_result, dict) or (
            "result" not in json_result and "error" not in json_result
        ):
            raise ProtocolError(
                f"Invalid JSON-RPC response for {method}: {json_result}")
        return json_result

    raise TransportError(
        f"Failed rpc request {method} to {url}: {last_error}", attempts)
