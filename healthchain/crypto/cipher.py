"""
Record encryption for the HealthChain pipeline.

Payloads are JSON objects. They are serialised canonically, encrypted with
AES-256-GCM under a key derived from caller-supplied secret material
(PBKDF2-HMAC-SHA256, random salt per ciphertext) and wrapped in a JSON
envelope that carries everything needed to decrypt except the secret.
"""

import base64
import binascii
import hashlib
import hmac
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from healthchain.constants import KDF_ITERATIONS, MAX_KDF_ITERATIONS
from healthchain.errors import DecryptionError, ValidationError

ENVELOPE_VERSION = 1
KDF_NAME = "pbkdf2-sha256"
KEY_SIZE = 32  # 256-bit AES key
SALT_SIZE = 16
NONCE_SIZE = 12  # 96 bits for GCM


def generate_key_material():
    """Generate random secret material suitable for encrypt/decrypt"""
    return base64.urlsafe_b64encode(os.urandom(32)).decode('utf-8')


def derive_key(key_material, salt, iterations=KDF_ITERATIONS):
    """Derive a fixed-length AES key from caller secret material"""
    if isinstance(key_material, str):
        key_material = key_material.encode('utf-8')
    if not key_material:
        raise ValidationError("Key material must not be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
        backend=default_backend()
    )
    return kdf.derive(key_material)


def canonical_json(payload):
    """Serialise a payload deterministically (sorted keys, no whitespace)"""
    try:
        return json.dumps(payload, sort_keys=True, separators=(',', ':'), ensure_ascii=False).encode('utf-8')
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Record payload is not JSON serialisable: {e}")


def encrypt(payload, key_material, iterations=None):
    """Encrypt a structured record.

    Args:
        payload: The record as a JSON object (dict)
        key_material: Caller secret (str or bytes); never used as the key directly
        iterations: KDF iteration count, defaults to KDF_ITERATIONS

    Returns:
        str: The self-contained ciphertext envelope
    """
    if not isinstance(payload, dict):
        raise ValidationError("Record payload must be a JSON object")
    iterations = iterations or KDF_ITERATIONS
    data = canonical_json(payload)

    salt = os.urandom(SALT_SIZE)
    iv = os.urandom(NONCE_SIZE)
    key = derive_key(key_material, salt, iterations)

    encryptor = Cipher(
        algorithms.AES(key),
        modes.GCM(iv),
        backend=default_backend()
    ).encryptor()
    ciphertext = encryptor.update(data) + encryptor.finalize()

    envelope = {
        'v': ENVELOPE_VERSION,
        'kdf': KDF_NAME,
        'iter': iterations,
        'salt': base64.b64encode(salt).decode('utf-8'),
        'iv': base64.b64encode(iv).decode('utf-8'),
        'ciphertext': base64.b64encode(ciphertext).decode('utf-8'),
        'tag': base64.b64encode(encryptor.tag).decode('utf-8')
    }
    return json.dumps(envelope, sort_keys=True)


def decrypt(ciphertext, key_material):
    """Decrypt an envelope produced by encrypt().

    Raises:
        DecryptionError: wrong key, corrupt envelope or unparsable plaintext.
            All causes raise the same error with the same message.
    """
    try:
        if isinstance(ciphertext, bytes):
            ciphertext = ciphertext.decode('utf-8')
        envelope = json.loads(ciphertext)
        if envelope['v'] != ENVELOPE_VERSION or envelope['kdf'] != KDF_NAME:
            raise ValueError("unsupported envelope")
        iterations = int(envelope['iter'])
        if not 1 <= iterations <= MAX_KDF_ITERATIONS:
            raise ValueError("iteration count out of range")

        salt = base64.b64decode(envelope['salt'], validate=True)
        iv = base64.b64decode(envelope['iv'], validate=True)
        body = base64.b64decode(envelope['ciphertext'], validate=True)
        tag = base64.b64decode(envelope['tag'], validate=True)

        key = derive_key(key_material, salt, iterations)
        decryptor = Cipher(
            algorithms.AES(key),
            modes.GCM(iv, tag),
            backend=default_backend()
        ).decryptor()
        plaintext = decryptor.update(body) + decryptor.finalize()

        payload = json.loads(plaintext.decode('utf-8'))
        if not isinstance(payload, dict):
            raise ValueError("payload is not an object")
    except (InvalidTag, ValueError, KeyError, TypeError, AttributeError, binascii.Error):
        raise DecryptionError() from None

    return payload


def hash_payload(payload):
    """SHA-256 digest (hex) of the canonical payload, for integrity checks"""
    return hashlib.sha256(canonical_json(payload)).hexdigest()


def verify_payload(payload, digest):
    """Check a payload against a digest from hash_payload()"""
    if not isinstance(digest, str):
        return False
    try:
        current = hash_payload(payload)
    except ValidationError:
        return False
    return hmac.compare_digest(current, digest.lower())
