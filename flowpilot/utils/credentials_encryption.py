"""
Credentials Encryption
Fernet (AES) encryption for connector authConfig at rest (tokens, API keys, passwords)
"""
import os
import json
import base64
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from typing import Dict, Any, Optional

ENCRYPTED_FIELD = '_encrypted'


class CredentialsEncryption:
    """
    Encrypts and decrypts authConfig dicts.
    The whole dict is serialized to JSON and stored as {'_encrypted': <token>}.
    """

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Args:
            encryption_key: 64-char hex or urlsafe-base64 key. If None, uses INTEGRATION_ENCRYPTION_KEY env var
        """
        if encryption_key is None:
            encryption_key = os.getenv('INTEGRATION_ENCRYPTION_KEY')

        if not encryption_key:
            raise ValueError("INTEGRATION_ENCRYPTION_KEY environment variable is required")

        if len(encryption_key) == 64:
            key_bytes = bytes.fromhex(encryption_key)
        else:
            key_bytes = base64.urlsafe_b64decode(encryption_key)

        # Any other key length is stretched to the 32 bytes Fernet needs
        if len(key_bytes) != 32:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=b'flowpilot_connectors',
                iterations=100000,
            )
            key_bytes = kdf.derive(key_bytes)

        self.cipher = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Encrypt an authConfig dict

        Returns:
            {'_encrypted': '<base64 token>'}
        """
        json_str = json.dumps(data, default=str)
        encrypted_bytes = self.cipher.encrypt(json_str.encode('utf-8'))
        return {ENCRYPTED_FIELD: base64.b64encode(encrypted_bytes).decode('utf-8')}

    def decrypt(self, encrypted_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Decrypt an authConfig dict produced by encrypt()

        Plain dicts (no '_encrypted' key) are returned unchanged.

        Raises:
            ValueError: If the payload was encrypted with another key or is corrupted
        """
        if not is_encrypted(encrypted_data):
            return encrypted_data

        encrypted_bytes = base64.b64decode(encrypted_data[ENCRYPTED_FIELD])
        try:
            decrypted_bytes = self.cipher.decrypt(encrypted_bytes)
        except InvalidToken:
            raise ValueError("Unable to decrypt credentials: wrong key or corrupted data")

        return json.loads(decrypted_bytes.decode('utf-8'))

    @staticmethod
    def generate_key() -> str:
        """
        Generate a new encryption key (64-char hex string) for INTEGRATION_ENCRYPTION_KEY
        """
        key_bytes = base64.urlsafe_b64decode(Fernet.generate_key())
        return key_bytes.hex()


def is_encrypted(data: Any) -> bool:
    return isinstance(data, dict) and ENCRYPTED_FIELD in data
