from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from rpc_uptime import database
from rpc_uptime.database import bulk_insert
from rpc_uptime.models import (
    RPCMeasurement,
    RPCMeasurementHeader,
    Validator,
    ValidatorRPC,
)
from rpc_uptime.prober import ProbeResult

EXECUTED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def add_validators(db, network, *addresses):
    with db.session_scope() as session:
        rows = [Validator(network_id=network.id, address=a) for a in addresses]
        bulk_insert(session, rows)
    return db.get_validators_by_addresses(network.id, addresses)


def history(db, validator_id):
    with db.session_scope() as session:
        return [
            (r.rpc_measurement_header_id, r.rpc_url)
            for r in session.execute(
                select(ValidatorRPC)
                .where(ValidatorRPC.validator_id == validator_id)
                .order_by(ValidatorRPC.id)
            ).scalars()
        ]


def test_get_or_create_network_is_stable(db):
    first = db.get_or_create_network("celo")
    second = db.get_or_create_network("celo")
    assert first.id == second.id


def test_persist_cycle_records_every_validator(db, network):
    with_url, without_url = add_validators(db, network, "0xA", "0xB")
    with_url.rpc_url = "http://a-rpc"
    probes = {with_url.id: ProbeResult(True, 42, 200, 15, False)}

    header_id = db.persist_cycle(network.id, "m-1", EXECUTED_AT, [with_url, without_url], probes)

    with db.session_scope() as session:
        header = session.get(RPCMeasurementHeader, header_id)
        assert header.measurement_id == "m-1"
        rows = {
            m.validator_id: m
            for m in session.execute(select(RPCMeasurement)).scalars()
        }
    assert set(rows) == {with_url.id, without_url.id}
    assert all(m.rpc_measurement_header_id == header_id for m in rows.values())
    assert rows[with_url.id].up is True
    assert rows[with_url.id].block_number == 42
    assert rows[with_url.id].is_syncing is False
    assert rows[without_url.id].up is False
    assert rows[without_url.id].block_number is None
    assert rows[without_url.id].is_syncing is None


def test_rpc_history_appends_only_on_change(db, network):
    (validator,) = add_validators(db, network, "0xA")
    validator.rpc_url = "http://a"

    first = db.persist_cycle(network.id, "m-1", EXECUTED_AT, [validator], {})
    db.persist_cycle(network.id, "m-2", EXECUTED_AT, [validator], {})
    assert history(db, validator.id) == [(first, "http://a")]

    validator.rpc_url = "http://b"
    third = db.persist_cycle(network.id, "m-3", EXECUTED_AT, [validator], {})
    assert history(db, validator.id) == [(first, "http://a"), (third, "http://b")]
    assert db.get_latest_rpc_url(network.id, "0xA") == "http://b"


def test_validator_without_url_gets_no_history(db, network):
    (validator,) = add_validators(db, network, "0xA")
    db.persist_cycle(network.id, "m-1", EXECUTED_AT, [validator], {})
    assert history(db, validator.id) == []
    assert db.get_latest_rpc_url(network.id, "0xA") is None


def test_persist_cycle_is_all_or_nothing(db, network, monkeypatch):
    (validator,) = add_validators(db, network, "0xA")
    db.persist_cycle(network.id, "m-1", EXECUTED_AT, [validator], {})

    def fail(*args, **kwargs):
        raise RuntimeError("history write failed")

    monkeypatch.setattr(database, "append_validator_rpcs", fail)
    validator.rpc_url = "http://a"
    with pytest.raises(RuntimeError):
        db.persist_cycle(network.id, "m-2", EXECUTED_AT, [validator], {})

    with db.session_scope() as session:
        assert session.query(RPCMeasurementHeader).count() == 1
        assert session.query(RPCMeasurement).count() == 1
        assert session.query(ValidatorRPC).count() == 0


def test_update_validator_rpc_url(db, network):
    (validator,) = add_validators(db, network, "0xA")
    assert db.update_validator_rpc_url(validator.id, "http://a") is True
    assert db.update_validator_rpc_url(validator.id, "http://a") is False
    (reloaded,) = db.get_validators_by_addresses(network.id, ["0xA"])
    assert reloaded.rpc_url == "http://a"


def test_get_validators_by_addresses_empty(db, network):
    assert db.get_validators_by_addresses(network.id, []) == []
