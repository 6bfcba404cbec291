# RPC UPTIME TABLES
from datetime import datetime, timezone
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class Network(Base, TimestampMixin):
    __tablename__ = "networks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    network_name = Column(String(100), nullable=False, unique=True)


class ValidatorGroup(Base, TimestampMixin):
    __tablename__ = "validator_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    network_id = Column(Integer, ForeignKey("networks.id"), nullable=False)
    address = Column(String(42), nullable=False)
    name = Column(String(255))

    __table_args__ = (
        UniqueConstraint("network_id", "address", name="uq_validator_group_address"),
    )


class Validator(Base, TimestampMixin):
    __tablename__ = "validators"

    id = Column(Integer, primary_key=True, autoincrement=True)
    network_id = Column(Integer, ForeignKey("networks.id"), nullable=False)
    address = Column(String(42), nullable=False)
    # Group address
    affiliation = Column(String(42))
    # Cached from the latest resolution, updated as soon as it changes
    rpc_url = Column(String(512))

    __table_args__ = (
        UniqueConstraint("network_id", "address", name="uq_validator_address"),
    )


class ValidatorName(Base, TimestampMixin):
    """Display name of a validator as of a block; append-only."""

    __tablename__ = "validator_names"

    id = Column(Integer, primary_key=True, autoincrement=True)
    network_id = Column(Integer, ForeignKey("networks.id"), nullable=False)
    validator_id = Column(
        Integer, ForeignKey("validators.id", ondelete="CASCADE"), nullable=False
    )
    block_number = Column(BigInteger, nullable=False)
    validator_name = Column(String(255))

    __table_args__ = (
        UniqueConstraint("validator_id", "block_number", name="uq_validator_name_block"),
        Index("idx_validator_name_lookup", "network_id", "validator_id", "block_number"),
    )


class RPCMeasurementHeader(Base, TimestampMixin):
    __tablename__ = "rpc_measurement_headers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    network_id = Column(Integer, ForeignKey("networks.id"), nullable=False)
    executed_at = Column(DateTime(timezone=True), nullable=False)
    measurement_id = Column(String(36), nullable=False, unique=True)

    __table_args__ = (Index("idx_rpc_header_executed", "network_id", "executed_at"),)


class ValidatorRPC(Base, TimestampMixin):
    """RPC URL history; a row is appended only when the URL changes."""

    __tablename__ = "validator_rpcs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    network_id = Column(Integer, ForeignKey("networks.id"), nullable=False)
    validator_id = Column(
        Integer, ForeignKey("validators.id", ondelete="CASCADE"), nullable=False
    )
    rpc_measurement_header_id = Column(
        Integer, ForeignKey("rpc_measurement_headers.id"), nullable=False
    )
    rpc_url = Column(String(512), nullable=False)

    __table_args__ = (
        Index(
            "idx_validator_rpc_latest",
            "validator_id",
            "network_id",
            "rpc_measurement_header_id",
        ),
    )


class RPCMeasurement(Base, TimestampMixin):
    __tablename__ = "rpc_measurements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rpc_measurement_header_id = Column(
        Integer,
        ForeignKey("rpc_measurement_headers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    network_id = Column(Integer, ForeignKey("networks.id"), nullable=False)
    validator_id = Column(Integer, ForeignKey("validators.id"), nullable=False)

    up = Column(Boolean, nullable=False, default=False)
    block_number = Column(BigInteger)
    status_code = Column(Integer)
    response_time_ms = Column(Integer)
    is_syncing = Column(Boolean)

    __table_args__ = (
        Index("idx_rpc_measurement_validator", "validator_id", "network_id"),
    )
