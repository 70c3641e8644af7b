import base64
import json
import unittest

from healthchain.crypto import decrypt, encrypt, generate_key_material, hash_payload, verify_payload
from healthchain.errors import DecryptionError, ValidationError
from tests.helpers import TEST_ITERATIONS, TEST_RECORD


class TestCipher(unittest.TestCase):
    def setUp(self):
        self.key = generate_key_material()

    def test_roundtrip(self):
        ciphertext = encrypt(TEST_RECORD, self.key, iterations=TEST_ITERATIONS)
        self.assertEqual(decrypt(ciphertext, self.key), TEST_RECORD)

    def test_decrypt_accepts_bytes(self):
        ciphertext = encrypt(TEST_RECORD, self.key, iterations=TEST_ITERATIONS)
        self.assertEqual(decrypt(ciphertext.encode("utf-8"), self.key), TEST_RECORD)

    def test_envelope_does_not_contain_plaintext(self):
        ciphertext = encrypt(TEST_RECORD, self.key, iterations=TEST_ITERATIONS)
        envelope = json.loads(ciphertext)
        self.assertEqual(envelope["v"], 1)
        self.assertEqual(envelope["kdf"], "pbkdf2-sha256")
        self.assertEqual(envelope["iter"], TEST_ITERATIONS)
        self.assertNotIn("Hypertension", ciphertext)

    def test_fresh_salt_and_nonce(self):
        first = json.loads(encrypt(TEST_RECORD, self.key, iterations=TEST_ITERATIONS))
        second = json.loads(encrypt(TEST_RECORD, self.key, iterations=TEST_ITERATIONS))
        self.assertNotEqual(first["salt"], second["salt"])
        self.assertNotEqual(first["iv"], second["iv"])
        self.assertNotEqual(first["ciphertext"], second["ciphertext"])

    def test_wrong_key(self):
        ciphertext = encrypt(TEST_RECORD, self.key, iterations=TEST_ITERATIONS)
        with self.assertRaises(DecryptionError) as ctx:
            decrypt(ciphertext, generate_key_material())
        self.assertEqual(ctx.exception.message, "Failed to decrypt data")

    def test_tampered_ciphertext(self):
        envelope = json.loads(encrypt(TEST_RECORD, self.key, iterations=TEST_ITERATIONS))
        body = bytearray(base64.b64decode(envelope["ciphertext"]))
        body[0] ^= 0x01
        envelope["ciphertext"] = base64.b64encode(bytes(body)).decode("utf-8")
        with self.assertRaises(DecryptionError):
            decrypt(json.dumps(envelope), self.key)

    def test_same_error_for_every_cause(self):
        messages = set()
        for bad in ("not json", "{}", json.dumps({"v": 2}), b"\xff\xfe", json.dumps([1, 2])):
            with self.assertRaises(DecryptionError) as ctx:
                decrypt(bad, self.key)
            messages.add(ctx.exception.message)
        self.assertEqual(messages, {"Failed to decrypt data"})

    def test_payload_must_be_object(self):
        with self.assertRaises(ValidationError):
            encrypt(["not", "an", "object"], self.key, iterations=TEST_ITERATIONS)

    def test_empty_key_material(self):
        with self.assertRaises(ValidationError):
            encrypt(TEST_RECORD, "", iterations=TEST_ITERATIONS)

    def test_hash_is_key_order_independent(self):
        reordered = dict(reversed(list(TEST_RECORD.items())))
        self.assertEqual(hash_payload(TEST_RECORD), hash_payload(reordered))
        self.assertTrue(verify_payload(reordered, hash_payload(TEST_RECORD)))
        self.assertFalse(verify_payload({"patientID": "124"}, hash_payload(TEST_RECORD)))
        self.assertFalse(verify_payload(TEST_RECORD, None))


if __name__ == "__main__":
    unittest.main()
