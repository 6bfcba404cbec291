import time
import logging
from dataclasses import dataclass
from typing import List, Optional

from .celocli import ElectedValidator, ValidatorGroupInfo
from .database import (
    Database,
    bulk_insert,
    find_validator_groups,
    find_validators,
    get_validator_name_at_block,
)
from .models import Validator, ValidatorGroup, ValidatorName

logger = logging.getLogger(__name__)


def normalize_name(name: Optional[str], address: str) -> str:
    """An empty or missing name is equivalent to the entity's own address."""
    return (name or "").strip() or address


@dataclass
class ReconcileResult:
    groups_inserted: int = 0
    groups_updated: int = 0
    validators_inserted: int = 0
    names_refreshed: int = 0
    refresh_needed: bool = False

    @property
    def changed(self) -> bool:
        return bool(
            self.groups_inserted
            or self.groups_updated
            or self.validators_inserted
            or self.names_refreshed
        )


class DirectoryReconciler:
    """Keeps the stored validator/group directory in line with celocli."""

    def __init__(self, db: Database, network_id: int):
        self.db = db
        self.network_id = network_id

    def reconcile(
        self,
        groups: List[ValidatorGroupInfo],
        validators: List[ElectedValidator],
        block_number: int,
    ) -> ReconcileResult:
        start_time = time.time()
        result = ReconcileResult()

        with self.db.session_scope() as session:
            self._reconcile_groups(session, groups, result)
            refresh = self._reconcile_validators(
                session, validators, block_number, result
            )

            if result.groups_inserted or result.validators_inserted or refresh:
                result.refresh_needed = True
                logger.info(f"Updating validator names and groups at block {block_number}")
                result.names_refreshed = self._refresh_names(
                    session, validators, block_number
                )
            else:
                logger.info(
                    f"Skipping validator names and groups update at block {block_number}, nothing changed"
                )

        logger.info(
            f"Processed validators and groups in {(time.time() - start_time) * 1000:.0f} ms: "
            f"{result.groups_inserted} groups inserted, {result.groups_updated} groups updated, "
            f"{result.validators_inserted} validators inserted, {result.names_refreshed} names refreshed"
        )
        return result

    def _reconcile_groups(self, session, groups, result: ReconcileResult):
        stored = {g.address: g for g in find_validator_groups(session, self.network_id)}
        to_insert = []
        for group in groups:
            name = normalize_name(group.name, group.address)
            existing = stored.get(group.address)
            if existing is None:
                logger.info(f"Inserting new validator group {name} {group.address}")
                to_insert.append(
                    ValidatorGroup(
                        network_id=self.network_id, address=group.address, name=name
                    )
                )
                continue
            if normalize_name(existing.name, group.address) != name:
                logger.info(
                    f"Updating validator group {group.address} name from {existing.name} to {name}"
                )
                existing.name = name
                result.groups_updated += 1
        result.groups_inserted = bulk_insert(session, to_insert)
        session.flush()

    def _reconcile_validators(
        self, session, validators, block_number, result: ReconcileResult
    ) -> bool:
        stored = {v.address: v for v in find_validators(session, self.network_id)}
        to_insert = []
        refresh = False
        for validator in validators:
            existing = stored.get(validator.address)
            if existing is None:
                logger.info(f"Inserting new validator {validator.name} {validator.address}")
                to_insert.append(
                    Validator(
                        network_id=self.network_id,
                        address=validator.address,
                        affiliation=validator.affiliation,
                    )
                )
                continue
            name_row = get_validator_name_at_block(
                session, self.network_id, existing.id, block_number
            )
            stored_name = name_row.validator_name if name_row else None
            if name_row is None or normalize_name(
                stored_name, validator.address
            ) != normalize_name(validator.name, validator.address):
                logger.info(
                    f"Validator {validator.address} has a different name in the database: "
                    f"{stored_name!r}, names will be refreshed"
                )
                refresh = True
            elif existing.affiliation != validator.affiliation:
                logger.info(
                    f"Validator {validator.address} changed affiliation from "
                    f"{existing.affiliation} to {validator.affiliation}, names will be refreshed"
                )
                refresh = True
        result.validators_inserted = bulk_insert(session, to_insert)
        return refresh

    def _refresh_names(self, session, validators, block_number) -> int:
        """Record each validator's current name and affiliation as of block_number."""
        stored = {v.address: v for v in find_validators(session, self.network_id)}
        refreshed = 0
        for validator in validators:
            existing = stored.get(validator.address)
            if existing is None:
                continue
            if existing.affiliation != validator.affiliation:
                existing.affiliation = validator.affiliation

            name = normalize_name(validator.name, validator.address)
            name_row = get_validator_name_at_block(
                session, self.network_id, existing.id, block_number
            )
            if name_row is not None and name_row.validator_name == name:
                continue
            if name_row is not None and name_row.block_number == block_number:
                name_row.validator_name = name
            else:
                session.add(
                    ValidatorName(
                        network_id=self.network_id,
                        validator_id=existing.id,
                        block_number=block_number,
                        validator_name=name,
                    )
                )
            refreshed += 1

        session.flush()
        return refreshed
