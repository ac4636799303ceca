import logging
from prometheus_client import Counter, start_http_server

USER_OPERATIONS_SUBMITTED = Counter(
    "user_operations_submitted",
    "UserOperations accepted by the bundler",
)
USER_OPERATIONS_REJECTED = Counter(
    "user_operations_rejected",
    "UserOperations refused by the bundler at submission",
)
USER_OPERATIONS_FINALIZED = Counter(
    "user_operations_finalized",
    "Submitted UserOperations by terminal status",
    ["status"],
)


def run_metrics_server(host="localhost", port=8000):
    """
    run prometheus metrics server
    """
    logging.info(f"Starting Metrics Http Server at: {host}:{port}")
    start_http_server(port, addr=host)
