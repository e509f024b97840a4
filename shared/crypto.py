"""
Cryptography utilities for credentials and link signatures.

Storage credentials are encrypted at rest with a machine-derived Fernet key.
Local signed links are authenticated with HMAC-SHA256 over their claims.
"""

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.exceptions import InvalidSignature
import base64
import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

MACHINE_KEY_SALT = b'stemvault-salt-v1'


class CredentialManager:
    """Manager for encrypting/decrypting stored credentials."""

    @staticmethod
    def generate_key_from_password(password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: Secret material
            salt: Salt bytes for key derivation

        Returns:
            Urlsafe base64 Fernet key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    @staticmethod
    def generate_machine_key() -> bytes:
        """
        Derive a machine-specific key from the machine id and user name.

        Less secure than a password, but needs no user input.
        """
        try:
            with open('/etc/machine-id', 'r') as f:
                machine_id = f.read().strip()
        except OSError:
            machine_id = os.getenv('HOSTNAME', 'default-machine')

        username = os.getenv('USER', 'default-user')
        return CredentialManager.generate_key_from_password(
            f"{machine_id}-{username}", MACHINE_KEY_SALT
        )

    @staticmethod
    def encrypt(data: str, key: Optional[bytes] = None) -> str:
        """Encrypt a string, returning a base64 token."""
        if key is None:
            key = CredentialManager.generate_machine_key()
        encrypted = Fernet(key).encrypt(data.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    @staticmethod
    def decrypt(encrypted_data: str, key: Optional[bytes] = None) -> Optional[str]:
        """
        Decrypt a token produced by encrypt().

        Returns:
            Decrypted string, or None if the token does not decrypt with this key
        """
        if key is None:
            key = CredentialManager.generate_machine_key()
        try:
            encrypted_bytes = base64.urlsafe_b64decode(encrypted_data.encode())
            return Fernet(key).decrypt(encrypted_bytes).decode()
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Credential decryption failed: {e!r}")
            return None


def sign(payload: str, secret: bytes) -> str:
    """HMAC-SHA256 of payload, urlsafe base64 without padding."""
    h = hmac.HMAC(secret, hashes.SHA256())
    h.update(payload.encode())
    return base64.urlsafe_b64encode(h.finalize()).decode().rstrip('=')


def verify(payload: str, signature: str, secret: bytes) -> bool:
    """Constant-time check of a signature produced by sign()."""
    padded = signature + '=' * (-len(signature) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode())
    except ValueError:
        return False
    h = hmac.HMAC(secret, hashes.SHA256())
    h.update(payload.encode())
    try:
        h.verify(raw)
        return True
    except InvalidSignature:
        return False
