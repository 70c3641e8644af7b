"""
Encrypted content-addressing pipeline.

store:  payload --encrypt--> ciphertext --put--> CID --register--> record id
read:   record id --(audited read tx)--> descriptor --get--> ciphertext --decrypt--> payload

Key material never leaves the client: it is passed in per call and only
reaches the cipher. Content-store calls are retried here, by the caller,
with the session's retry policy and a caller-supplied deadline.
"""

import logging

from healthchain.crypto.cipher import decrypt, encrypt, hash_payload, verify_payload
from healthchain.errors import DecryptionError
from healthchain.models import RecordDescriptor, normalize_address
from healthchain.registry import RecordRegistry
from healthchain.retry import call_with_retry

logger = logging.getLogger(__name__)


class RecordVault:
    def __init__(self, session, content_store, retry_policy=None, kdf_iterations=None):
        self.session = session
        self.store = content_store
        self.retry_policy = retry_policy or session.retry_policy
        self.kdf_iterations = kdf_iterations
        self.registry = RecordRegistry(session)

    def _put(self, ciphertext, timeout=None):
        data = ciphertext.encode('utf-8')
        return call_with_retry(lambda: self.store.put(data), self.retry_policy, timeout=timeout)

    def fetch_content(self, cid, timeout=None, cancel=None) -> bytes:
        """Retrieve ciphertext, retrying availability failures with backoff"""
        return call_with_retry(lambda: self.store.get(cid), self.retry_policy, timeout=timeout, cancel=cancel)

    def store_record(self, payload, record_type, key_material, metadata=None, timeout=None):
        """
        Encrypt a record, store it, and register it for the session principal.

        Args:
            payload: The record as a JSON object
            record_type: One of the fixed record categories
            key_material: Secret the patient encrypts with
            metadata: Non-sensitive descriptive fields stored on the ledger

        Returns:
            str: The new record id
        """
        ciphertext = encrypt(payload, key_material, self.kdf_iterations)
        cid = self._put(ciphertext, timeout)
        record_id = self.registry.register(record_type, cid, metadata, integrity=hash_payload(payload))
        logger.info(f"Stored record {record_id} with CID: {cid}")
        return record_id

    def update_record(self, record_id, payload, key_material, metadata=None, timeout=None) -> RecordDescriptor:
        """Re-encrypt new content for an existing record; the old CID stays in its history"""
        ciphertext = encrypt(payload, key_material, self.kdf_iterations)
        cid = self._put(ciphertext, timeout)
        return self.registry.update(record_id, cid, metadata, integrity=hash_payload(payload))

    def open_record(self, record_id, key_material, timeout=None, cancel=None):
        """Decrypt one of the session principal's own records"""
        descriptor = self.registry.get(self.session.principal, record_id)
        return self._decrypt(descriptor, key_material, timeout, cancel)

    def read_record(self, patient, record_id, key_material, timeout=None, cancel=None):
        """
        Dereference another patient's record.

        The ledger re-validates the grant and writes the ReadRecord audit entry
        in the same transaction; without a live grant this raises Forbidden and
        nothing is fetched.
        """
        patient = normalize_address(patient)
        descriptor = self.session.transact("read_record", patient=patient, record_id=record_id)
        logger.info(f"{self.session.principal} read record {record_id} of {patient}")
        return self._decrypt(descriptor, key_material, timeout, cancel)

    def _decrypt(self, descriptor, key_material, timeout, cancel):
        data = self.fetch_content(descriptor.content_ref, timeout=timeout, cancel=cancel)
        payload = decrypt(data, key_material)
        if descriptor.integrity and not verify_payload(payload, descriptor.integrity):
            logger.error(f"Integrity check failed for record {descriptor.record_id}")
            raise DecryptionError()
        return payload
