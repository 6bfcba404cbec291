"""
Persistence boundary: engine and session lifecycle, directory lookups,
bulk inserts and the per-cycle measurement transaction.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from .models import (
    Base,
    Network,
    RPCMeasurement,
    RPCMeasurementHeader,
    Validator,
    ValidatorGroup,
    ValidatorName,
    ValidatorRPC,
)
from .prober import ProbeResult

logger = logging.getLogger(__name__)


class Database:
    """Connection handle for the indexer's relational store."""

    def __init__(
        self,
        url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        echo: bool = False,
    ):
        self.url = url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_timeout = pool_timeout
        self.echo = echo
        self._engine = None
        self._SessionLocal = None

    @property
    def engine(self):
        """Lazy initialization of the database engine"""
        if self._engine is None:
            kwargs = {"echo": self.echo, "pool_pre_ping": True}
            if self.url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
            else:
                kwargs.update(
                    pool_size=self.pool_size,
                    max_overflow=self.max_overflow,
                    pool_timeout=self.pool_timeout,
                )
            self._engine = create_engine(self.url, **kwargs)
        return self._engine

    @property
    def SessionLocal(self):
        if self._SessionLocal is None:
            self._SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._SessionLocal

    @contextmanager
    def session_scope(self):
        """Transactional scope: commit on success, roll back on any error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self):
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)

    def close(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    def get_or_create_network(self, network_name: str) -> Network:
        with self.session_scope() as session:
            network = session.execute(
                select(Network).where(Network.network_name == network_name)
            ).scalar_one_or_none()
            if network is None:
                network = Network(network_name=network_name)
                session.add(network)
                session.flush()
                logger.info(f"Created network {network_name} (id {network.id})")
            return network

    def get_validators_by_addresses(
        self, network_id: int, addresses: Iterable[str]
    ) -> List[Validator]:
        addresses = list(addresses)
        if not addresses:
            return []
        with self.session_scope() as session:
            return list(
                session.execute(
                    select(Validator).where(
                        Validator.network_id == network_id,
                        Validator.address.in_(addresses),
                    )
                ).scalars()
            )

    def update_validator_rpc_url(self, validator_id: int, rpc_url: str) -> bool:
        """Store a validator's current RPC URL; returns False if unchanged."""
        with self.session_scope() as session:
            validator = session.get(Validator, validator_id)
            if validator is None or validator.rpc_url == rpc_url:
                return False
            logger.info(
                f"Validator {validator.address} RPC URL changed from {validator.rpc_url} to {rpc_url}"
            )
            validator.rpc_url = rpc_url
            return True

    def get_latest_rpc_url(self, network_id: int, address: str) -> Optional[str]:
        """Most recent RPC URL in the history table for a validator address."""
        with self.session_scope() as session:
            validator_id = session.execute(
                select(Validator.id).where(
                    Validator.network_id == network_id, Validator.address == address
                )
            ).scalar_one_or_none()
            if validator_id is None:
                return None
            latest = latest_validator_rpc(session, network_id, validator_id)
            return latest.rpc_url if latest else None

    # ------------------------------------------------------------------
    # Measurement cycle
    # ------------------------------------------------------------------

    def persist_cycle(
        self,
        network_id: int,
        measurement_id: str,
        executed_at: datetime,
        validators: List[Validator],
        probes: Dict[int, ProbeResult],
    ) -> int:
        """
        Write one measurement cycle in a single transaction.

        Creates the header, one measurement row per validator (validators
        without a probe result are recorded as unreachable) and appends RPC
        history rows for URLs that changed. Returns the header id.
        """
        with self.session_scope() as session:
            header = RPCMeasurementHeader(
                network_id=network_id,
                executed_at=executed_at,
                measurement_id=measurement_id,
            )
            session.add(header)
            session.flush()

            measurements = []
            for validator in validators:
                probe = probes.get(validator.id) or ProbeResult()
                measurements.append(
                    RPCMeasurement(
                        rpc_measurement_header_id=header.id,
                        network_id=network_id,
                        validator_id=validator.id,
                        up=probe.up,
                        block_number=probe.block_number,
                        status_code=probe.status_code,
                        response_time_ms=probe.response_time_ms,
                        is_syncing=probe.is_syncing,
                    )
                )
            bulk_insert(session, measurements)

            appended = append_validator_rpcs(session, network_id, validators, header.id)
            logger.info(
                f"Persisted measurement {measurement_id}: header {header.id}, "
                f"{len(measurements)} measurements, {appended} RPC history rows"
            )
            return header.id


# ----------------------------------------------------------------------
# Session-level helpers
# ----------------------------------------------------------------------


def bulk_insert(session: Session, rows: list) -> int:
    if not rows:
        return 0
    session.add_all(rows)
    session.flush()
    return len(rows)


def find_validator_groups(session: Session, network_id: int) -> List[ValidatorGroup]:
    return list(
        session.execute(
            select(ValidatorGroup).where(ValidatorGroup.network_id == network_id)
        ).scalars()
    )


def find_validators(session: Session, network_id: int) -> List[Validator]:
    return list(
        session.execute(
            select(Validator).where(Validator.network_id == network_id)
        ).scalars()
    )


def get_validator_name_at_block(
    session: Session, network_id: int, validator_id: int, block_number: int
) -> Optional[ValidatorName]:
    """The validator's name record in effect at the given block."""
    return session.execute(
        select(ValidatorName)
        .where(
            ValidatorName.network_id == network_id,
            ValidatorName.validator_id == validator_id,
            ValidatorName.block_number <= block_number,
        )
        .order_by(ValidatorName.block_number.desc())
        .limit(1)
    ).scalar_one_or_none()


def latest_validator_rpc(
    session: Session, network_id: int, validator_id: int
) -> Optional[ValidatorRPC]:
    return session.execute(
        select(ValidatorRPC)
        .where(
            ValidatorRPC.validator_id == validator_id,
            ValidatorRPC.network_id == network_id,
        )
        .order_by(ValidatorRPC.rpc_measurement_header_id.desc(), ValidatorRPC.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def append_validator_rpcs(
    session: Session,
    network_id: int,
    validators: List[Validator],
    header_id: int,
) -> int:
    """Append a history row for every validator whose URL differs from its latest row."""
    appended = 0
    for validator in validators:
        # Only track non-null URLs
        if not validator.rpc_url:
            continue
        latest = latest_validator_rpc(session, network_id, validator.id)
        if latest is not None and latest.rpc_url == validator.rpc_url:
            logger.debug(
                f"Validator {validator.id} already has RPC URL {validator.rpc_url} "
                f"since header {latest.rpc_measurement_header_id}"
            )
            continue
        if latest is None:
            logger.info(f"Validator {validator.id} does not have an RPC record yet")
        else:
            logger.info(
                f"Validator {validator.id} changed RPC URL from {latest.rpc_url} to {validator.rpc_url}"
            )
        session.add(
            ValidatorRPC(
                validator_id=validator.id,
                network_id=network_id,
                rpc_measurement_header_id=header_id,
                rpc_url=validator.rpc_url,
            )
        )
        appended += 1
    session.flush()
    return appended
