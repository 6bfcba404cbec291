import time
import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests

from .errors import ErrorKind, RPCCallError, snippet

logger = logging.getLogger(__name__)

SERVER_ERROR_STATUS = 500


@dataclass
class RPCResponse:
    result: Any
    status_code: int
    response_time_ms: float


def classify_request_error(exc: requests.RequestException) -> RPCCallError:
    """Map a requests exception onto the closed ErrorKind set."""
    response = getattr(exc, "response", None)
    status_code = response.status_code if response is not None else None
    if isinstance(exc, requests.Timeout):
        kind = ErrorKind.TIMEOUT
    elif status_code == 404:
        kind = ErrorKind.NOT_FOUND
    elif status_code is not None:
        kind = ErrorKind.SERVER_ERROR
    else:
        kind = ErrorKind.TRANSPORT
    return RPCCallError(kind, str(exc), status_code)


def json_rpc_call(
    session: requests.Session, url: str, method: str, timeout: float = 5
) -> RPCResponse:
    payload = {"jsonrpc": "2.0", "method": method, "id": 1}
    start_time = time.perf_counter()
    try:
        resp = session.post(url, json=payload, timeout=timeout)
        response_time_ms = (time.perf_counter() - start_time) * 1000
        resp.raise_for_status()
    except requests.RequestException as e:
        raise classify_request_error(e)

    try:
        body = resp.json()
    except ValueError:
        raise RPCCallError(
            ErrorKind.INVALID_RESPONSE,
            f"Non-JSON response from {url}: {snippet(resp.text)}",
            resp.status_code,
        )

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug({"event": "rpc_response", "url": url, "method": method, "response": snippet(body)})

    if not isinstance(body, dict) or "result" not in body:
        raise RPCCallError(
            ErrorKind.INVALID_RESPONSE,
            f"{method} returned no result from {url}: {snippet(body)}",
            resp.status_code,
        )
    return RPCResponse(body["result"], resp.status_code, response_time_ms)


def decode_block_number(result: Any, status_code: Optional[int] = None) -> int:
    try:
        return int(str(result), 16)
    except (TypeError, ValueError):
        raise RPCCallError(
            ErrorKind.INVALID_RESPONSE,
            f"Invalid block number: {snippet(result)}",
            status_code,
        )


def get_block_number(
    session: requests.Session, url: str, timeout: float = 5
) -> RPCResponse:
    """eth_blockNumber with the hex result decoded to an int."""
    response = json_rpc_call(session, url, "eth_blockNumber", timeout)
    response.result = decode_block_number(response.result, response.status_code)
    return response


def get_is_syncing(
    session: requests.Session, url: str, timeout: float = 5
) -> RPCResponse:
    """eth_syncing coerced to a bool (a sync-progress object means syncing)."""
    response = json_rpc_call(session, url, "eth_syncing", timeout)
    response.result = bool(response.result)
    return response


def chain_block_number(
    session: requests.Session, nodes: list, timeout: float = 5
) -> int:
    """Current chain height from the first node that answers."""
    last_error: Optional[Exception] = None
    for node_url in nodes:
        try:
            return get_block_number(session, node_url, timeout).result
        except RPCCallError as e:
            last_error = e
            logger.warning(f"Error getting block number from {node_url}: {e}")
    raise last_error or RPCCallError(ErrorKind.TRANSPORT, "No node configured")
