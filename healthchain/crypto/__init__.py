from healthchain.crypto.cipher import (
    decrypt,
    encrypt,
    generate_key_material,
    hash_payload,
    verify_payload,
)
