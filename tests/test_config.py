import pytest

from rpc_uptime.config import load_config, node_urls, normalize_config
from rpc_uptime.errors import ConfigError


def test_defaults():
    config = normalize_config({}, {})
    assert config["rpc_timer_ms"] == 300000
    assert config["cli_timeout_ms"] == 20000
    assert config["cli_max_retries"] == 3
    assert config["metadata_fetch_timeout_ms"] == 15000
    assert config["resolve_batch_size"] == 10
    assert config["migration_block"] == 0
    assert config["external_node_url"] is None


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("node_url: http://file-node\nrpc_timer_ms: 60000\nmigration_block: 5\n")

    config = load_config(str(path), {"NODE_URL": "http://env-node", "MIGRATION_BLOCK": "31056500"})

    assert config["node_url"] == "http://env-node"
    assert config["rpc_timer_ms"] == 60000
    assert config["migration_block"] == 31056500


def test_debug_flag_forces_debug_logging():
    assert normalize_config({}, {"DEBUG": "TRUE"})["log_level"] == "DEBUG"


def test_invalid_integer_is_a_config_error():
    with pytest.raises(ConfigError):
        normalize_config({}, {"CLI_TIMEOUT_MS": "soon"})


def test_node_urls_drop_duplicates_and_missing():
    assert node_urls({"node_url": "http://a", "external_node_url": None}) == ["http://a"]
    assert node_urls({"node_url": "http://a", "external_node_url": "http://a"}) == ["http://a"]
    assert node_urls({"node_url": "http://a", "external_node_url": "http://b"}) == [
        "http://a",
        "http://b",
    ]
