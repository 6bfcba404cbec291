import json

import pytest
import requests

from rpc_uptime.config import normalize_config
from rpc_uptime.database import Database


def make_response(status_code=200, json_data=None, text=None, url="http://node"):
    """A real requests.Response carrying the given body."""
    resp = requests.Response()
    resp.status_code = status_code
    resp.url = url
    if json_data is not None:
        resp._content = json.dumps(json_data).encode()
    else:
        resp._content = (text or "").encode()
    return resp


class FakeSession:
    """Stands in for requests.Session, answering from per-URL handlers."""

    def __init__(self, post=None, get=None):
        # url -> response, exception, or callable(payload) returning either
        self.post_handlers = post or {}
        self.get_handlers = get or {}
        self.calls = []
        self.max_redirects = 30

    def _answer(self, handler, payload):
        if callable(handler) and not isinstance(handler, requests.Response):
            handler = handler(payload)
        if isinstance(handler, Exception):
            raise handler
        return handler

    def post(self, url, json=None, timeout=None, **kwargs):
        self.calls.append(("POST", url, json))
        if url not in self.post_handlers:
            raise requests.ConnectionError(f"no route to {url}")
        return self._answer(self.post_handlers[url], json)

    def get(self, url, timeout=None, **kwargs):
        self.calls.append(("GET", url, None))
        if url not in self.get_handlers:
            raise requests.ConnectionError(f"no route to {url}")
        return self._answer(self.get_handlers[url], None)

    def close(self):
        pass


def rpc_node(block_hex="0x10", syncing=False, status_code=200):
    """Handler answering eth_blockNumber and eth_syncing like a healthy node."""

    def handler(payload):
        if payload["method"] == "eth_blockNumber":
            return make_response(status_code, {"jsonrpc": "2.0", "id": 1, "result": block_hex})
        return make_response(status_code, {"jsonrpc": "2.0", "id": 1, "result": syncing})

    return handler


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'rpc_uptime.db'}")
    database.create_all()
    yield database
    database.close()


@pytest.fixture
def network(db):
    return db.get_or_create_network("celo-test")


@pytest.fixture
def config():
    return normalize_config(
        {
            "network_id": "celo-test",
            "node_url": "http://primary:8545",
            "external_node_url": "http://fallback:8545",
            "migration_block": 100,
            "cli_base_delay_ms": 1,
            "cli_max_delay_ms": 1,
        },
        {},
    )
