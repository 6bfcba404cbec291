import pytest
import requests

from conftest import FakeSession, make_response, rpc_node
from rpc_uptime.errors import ErrorKind, RPCCallError
from rpc_uptime.prober import probe_endpoint
from rpc_uptime.rpc import chain_block_number, get_block_number, json_rpc_call

URL = "http://validator-rpc:8545"


def test_healthy_endpoint():
    session = FakeSession(post={URL: rpc_node("0x1a2b", syncing=False)})
    result = probe_endpoint(session, URL)

    assert result.up is True
    assert result.block_number == 0x1A2B
    assert result.status_code == 200
    assert result.response_time_ms is not None
    assert result.is_syncing is False
    assert [payload["method"] for _, _, payload in session.calls] == [
        "eth_blockNumber",
        "eth_syncing",
    ]
    assert session.calls[0][2] == {"jsonrpc": "2.0", "method": "eth_blockNumber", "id": 1}


def test_sync_progress_object_means_syncing():
    progress = {"startingBlock": "0x0", "currentBlock": "0x5", "highestBlock": "0x9"}
    session = FakeSession(post={URL: rpc_node("0x5", syncing=progress)})
    assert probe_endpoint(session, URL).is_syncing is True


def test_block_zero_is_still_reachable():
    session = FakeSession(post={URL: rpc_node("0x0")})
    result = probe_endpoint(session, URL)
    assert result.up is True
    assert result.block_number == 0


def test_unreachable_endpoint_records_server_error_and_unknown_sync():
    session = FakeSession()
    result = probe_endpoint(session, URL)

    assert result.up is False
    assert result.block_number is None
    assert result.status_code == 500
    assert result.response_time_ms is None
    assert result.is_syncing is None


def test_http_error_status_is_recorded():
    session = FakeSession(post={URL: make_response(503, text="unavailable")})
    result = probe_endpoint(session, URL)
    assert result.up is False
    assert result.status_code == 503
    assert result.is_syncing is None


def test_sync_failure_does_not_affect_block_check():
    def handler(payload):
        if payload["method"] == "eth_blockNumber":
            return make_response(200, {"result": "0x64"})
        return requests.Timeout("timed out")

    result = probe_endpoint(FakeSession(post={URL: handler}), URL)
    assert result.up is True
    assert result.block_number == 100
    assert result.is_syncing is None


def test_block_failure_does_not_suppress_sync_check():
    def handler(payload):
        if payload["method"] == "eth_blockNumber":
            return make_response(200, {"jsonrpc": "2.0", "error": {"code": -32000}})
        return make_response(200, {"result": False})

    result = probe_endpoint(FakeSession(post={URL: handler}), URL)
    assert result.up is False
    assert result.status_code == 200
    assert result.is_syncing is False


@pytest.mark.parametrize(
    "handler,kind,status",
    [
        (requests.Timeout("slow"), ErrorKind.TIMEOUT, None),
        (requests.ConnectionError("refused"), ErrorKind.TRANSPORT, None),
        (make_response(404, text="missing"), ErrorKind.NOT_FOUND, 404),
        (make_response(502, text="bad gateway"), ErrorKind.SERVER_ERROR, 502),
        (make_response(200, text="<html>"), ErrorKind.INVALID_RESPONSE, 200),
    ],
)
def test_json_rpc_errors_are_classified(handler, kind, status):
    session = FakeSession(post={URL: handler})
    with pytest.raises(RPCCallError) as excinfo:
        json_rpc_call(session, URL, "eth_blockNumber")
    assert excinfo.value.kind == kind
    assert excinfo.value.status_code == status


def test_invalid_block_number_is_rejected():
    session = FakeSession(post={URL: make_response(200, {"result": "latest"})})
    with pytest.raises(RPCCallError) as excinfo:
        get_block_number(session, URL)
    assert excinfo.value.kind == ErrorKind.INVALID_RESPONSE
    assert excinfo.value.status_code == 200


def test_undecodable_block_number_keeps_response_status():
    def handler(payload):
        if payload["method"] == "eth_blockNumber":
            return make_response(200, {"jsonrpc": "2.0", "id": 1, "result": None})
        return make_response(200, {"jsonrpc": "2.0", "id": 1, "result": False})

    result = probe_endpoint(FakeSession(post={URL: handler}), URL)

    assert result.up is False
    assert result.block_number is None
    assert result.status_code == 200
    assert result.is_syncing is False


def test_chain_block_number_uses_fallback_node():
    session = FakeSession(post={"http://fallback": rpc_node("0xff")})
    assert chain_block_number(session, ["http://primary", "http://fallback"]) == 255


def test_chain_block_number_fails_when_all_nodes_fail():
    with pytest.raises(RPCCallError):
        chain_block_number(FakeSession(), ["http://primary", "http://fallback"])
