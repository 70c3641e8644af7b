"""
Record registry: per-patient descriptors of encrypted records.

Each descriptor points at ciphertext in the content store (content_ref) and
carries non-sensitive metadata. Mutations are owner-gated twice: the client
checks its inputs before submitting, and the ledger handlers below re-check
ownership inside the serialized transaction so nothing can bypass the gate.
Every register/update appends to the record's version chain.
"""

import json
import logging
import secrets
import time
from typing import Any, Dict, List, Optional

from healthchain.constants import MAX_METADATA_BYTES
from healthchain.content_store import clean_cid
from healthchain.errors import Conflict, Forbidden, NotFoundError, ValidationError
from healthchain.models import (
    RecordDescriptor,
    RecordStatus,
    RecordType,
    RecordVersion,
    normalize_address,
)

logger = logging.getLogger(__name__)


def generate_record_id():
    """Generate a unique record id: record_<millis>_<random>"""
    return f"record_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def validate_record_type(record_type) -> RecordType:
    try:
        return RecordType(record_type)
    except ValueError:
        raise ValidationError(f"Unknown record type: {record_type!r}")


def validate_metadata(metadata) -> Dict[str, Any]:
    """Metadata must be a JSON object no larger than MAX_METADATA_BYTES"""
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("Metadata must be a JSON object")
    try:
        encoded = json.dumps(metadata, sort_keys=True, separators=(',', ':')).encode('utf-8')
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Metadata is not JSON serialisable: {e}")
    if len(encoded) > MAX_METADATA_BYTES:
        raise ValidationError(f"Metadata exceeds {MAX_METADATA_BYTES} bytes")
    return metadata


def validate_integrity(integrity) -> Optional[str]:
    if integrity is None:
        return None
    if not isinstance(integrity, str) or len(integrity) != 64:
        raise ValidationError("Integrity digest must be a hex SHA-256 digest")
    try:
        int(integrity, 16)
    except ValueError:
        raise ValidationError("Integrity digest must be a hex SHA-256 digest")
    return integrity.lower()


# Ledger transaction handlers

def apply_register(state, tx, timestamp):
    args = tx.args
    record_id = args.get("record_id")
    if not isinstance(record_id, str) or not record_id:
        raise ValidationError("Record id must be a non-empty string")
    if record_id in state.record_ids:
        raise Conflict(f"Record {record_id} already exists")

    descriptor = RecordDescriptor(
        record_id=record_id,
        owner=tx.sender,
        content_ref=clean_cid(args.get("content_ref")),
        record_type=validate_record_type(args.get("record_type")),
        metadata=validate_metadata(args.get("metadata")),
        integrity=validate_integrity(args.get("integrity")),
        created_at=timestamp,
        updated_at=timestamp,
    )
    state.records.setdefault(tx.sender, {})[record_id] = descriptor
    state.record_ids.add(record_id)
    state.versions[(tx.sender, record_id)] = [
        RecordVersion(
            version=1,
            content_ref=descriptor.content_ref,
            integrity=descriptor.integrity,
            recorded_at=timestamp,
        )
    ]
    return descriptor.model_copy(deep=True)


def _owned_record(state, tx):
    owner = normalize_address(tx.args.get("owner"))
    if tx.sender != owner:
        raise Forbidden("Only the record owner may modify a record")
    record_id = tx.args.get("record_id")
    record = state.records.get(owner, {}).get(record_id)
    if record is None:
        raise NotFoundError(f"Record {record_id} not found for {owner}")
    return record


def apply_update(state, tx, timestamp):
    record = _owned_record(state, tx)
    if record.status == RecordStatus.ARCHIVED:
        raise Conflict(f"Record {record.record_id} is archived")

    args = tx.args
    record.content_ref = clean_cid(args.get("content_ref"))
    record.metadata = validate_metadata(args.get("metadata"))
    record.integrity = validate_integrity(args.get("integrity"))
    record.version += 1
    record.updated_at = timestamp
    state.versions[(record.owner, record.record_id)].append(
        RecordVersion(
            version=record.version,
            content_ref=record.content_ref,
            integrity=record.integrity,
            recorded_at=timestamp,
        )
    )
    return record.model_copy(deep=True)


def apply_archive(state, tx, timestamp):
    record = _owned_record(state, tx)
    if record.status != RecordStatus.ARCHIVED:
        record.status = RecordStatus.ARCHIVED
        record.updated_at = timestamp
    return record.model_copy(deep=True)


class RecordRegistry:
    """Owner-scoped record descriptors, read and written through a session"""

    def __init__(self, session):
        self.session = session

    def register(self, record_type, content_ref, metadata=None, integrity=None, wait=True):
        """
        Register a new record owned by the session principal.

        Returns:
            str: The generated record id (or the transaction handle when wait=False)
        """
        record_type = validate_record_type(record_type)
        metadata = validate_metadata(metadata)
        integrity = validate_integrity(integrity)
        content_ref = clean_cid(content_ref)

        record_id = generate_record_id()
        result = self.session.transact(
            "register_record",
            wait=wait,
            record_id=record_id,
            record_type=record_type.value,
            content_ref=content_ref,
            metadata=metadata,
            integrity=integrity,
        )
        if not wait:
            return result
        logger.info(f"Registered {record_type.value} record {record_id} for {self.session.principal}")
        return record_id

    def update(self, record_id, content_ref, metadata=None, integrity=None, owner=None, wait=True):
        """Point a record at new content; only the owner may do this"""
        owner = normalize_address(owner or self.session.principal)
        if owner != self.session.principal:
            raise Forbidden("Only the record owner may modify a record")
        result = self.session.transact(
            "update_record",
            wait=wait,
            owner=owner,
            record_id=record_id,
            content_ref=clean_cid(content_ref),
            metadata=validate_metadata(metadata),
            integrity=validate_integrity(integrity),
        )
        if wait:
            logger.info(f"Updated record {record_id} to version {result.version}")
        return result

    def archive(self, record_id, owner=None, wait=True):
        """Logically remove a record; the descriptor and its history remain"""
        owner = normalize_address(owner or self.session.principal)
        if owner != self.session.principal:
            raise Forbidden("Only the record owner may archive a record")
        return self.session.transact("archive_record", wait=wait, owner=owner, record_id=record_id)

    def get(self, owner, record_id) -> RecordDescriptor:
        owner = normalize_address(owner)
        record = self.session.cached(
            ("record", owner, record_id),
            lambda: self.session.ledger.get_record(owner, record_id),
        )
        if record is None:
            raise NotFoundError(f"Record {record_id} not found for {owner}")
        return record

    def list_by_owner(self, owner, include_archived=False) -> List[RecordDescriptor]:
        """Records of ``owner``, newest first"""
        owner = normalize_address(owner)
        records = self.session.cached(
            ("records", owner),
            lambda: self.session.ledger.list_records(owner),
        )
        if not include_archived:
            records = [r for r in records if r.status == RecordStatus.ACTIVE]
        return sorted(reversed(records), key=lambda r: r.created_at, reverse=True)

    def history(self, owner, record_id) -> List[RecordVersion]:
        """Version chain of a record, oldest first"""
        owner = normalize_address(owner)
        versions = self.session.ledger.record_history(owner, record_id)
        if versions is None:
            raise NotFoundError(f"Record {record_id} not found for {owner}")
        return versions
