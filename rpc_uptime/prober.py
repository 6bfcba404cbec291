import time
import logging
from dataclasses import dataclass
from typing import Optional

import requests

from .errors import RPCCallError
from .rpc import SERVER_ERROR_STATUS, get_block_number, get_is_syncing

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    up: bool = False
    block_number: Optional[int] = None
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None
    # None means the node did not answer, which is not the same as "not syncing".
    is_syncing: Optional[bool] = None


def probe_endpoint(
    session: requests.Session, rpc_url: str, timeout: float = 5
) -> ProbeResult:
    """
    Check one RPC endpoint with two independent JSON-RPC calls.

    The block-number call decides reachability, block height, status code and
    latency; the sync call only fills ``is_syncing``. Neither check raises.
    """
    result = ProbeResult()

    start_time = time.time()
    try:
        response = get_block_number(session, rpc_url, timeout)
        result.up = True
        result.block_number = response.result
        result.status_code = response.status_code
        result.response_time_ms = round(response.response_time_ms)
    except RPCCallError as e:
        result.status_code = e.status_code or SERVER_ERROR_STATUS
        logger.warning(f"Error checking block number {rpc_url}: [{e.kind.value}] {e}")
    logger.debug(f"TimeSpan checked block number {rpc_url} {(time.time() - start_time) * 1000:.0f} ms")

    start_time = time.time()
    try:
        result.is_syncing = get_is_syncing(session, rpc_url, timeout).result
    except RPCCallError as e:
        logger.warning(f"Error checking is syncing {rpc_url}: [{e.kind.value}] {e}")
    logger.debug(f"TimeSpan checked is syncing {rpc_url} {(time.time() - start_time) * 1000:.0f} ms")

    return result
