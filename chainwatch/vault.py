"""Encryption of wallet signing material at rest (Fernet).

Signing material is stored as an encrypted JSON blob. It is decrypted in
memory right before signing and never written back in clear form.
"""

from __future__ import annotations

import json

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from chainwatch.exceptions import DecryptionError, SecurityError
from chainwatch.models import SigningMaterial


class KeyVault:
    """
    Fernet wrapper for signing material.

    Args:
        encryption_key: url-safe base64 Fernet key (see generate_key()).
    """

    def __init__(self, encryption_key: str) -> None:
        if not encryption_key:
            raise SecurityError(
                "Encryption key not configured. Set security.encryption_key "
                "or CHAINWATCH_ENCRYPTION_KEY (generate one with `chainwatch key generate`)."
            )
        try:
            self._fernet = Fernet(encryption_key.encode())
        except (ValueError, TypeError) as e:
            raise SecurityError(f"Invalid encryption key: {e}") from e

    def encrypt_material(self, material: SigningMaterial) -> str:
        payload = json.dumps(
            {
                "privateKey": material.private_key,
                "publicKey": material.public_key,
                "mnemonic": material.mnemonic,
            }
        )
        return self._fernet.encrypt(payload.encode()).decode()

    def decrypt_material(self, ciphertext: str) -> SigningMaterial:
        try:
            data = json.loads(self._fernet.decrypt(ciphertext.encode()).decode())
        except InvalidToken as e:
            logger.error("Decryption of signing material failed: invalid token")
            raise DecryptionError("Decryption failed: invalid token or wrong key") from e
        except (ValueError, TypeError) as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

        if not data.get("privateKey") or not data.get("publicKey"):
            raise DecryptionError("Signing material requires both publicKey and privateKey")

        return SigningMaterial(
            private_key=data["privateKey"],
            public_key=data["publicKey"],
            mnemonic=data.get("mnemonic", ""),
        )

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key."""
        return Fernet.generate_key().decode()
