# safu/security.py
import logging
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from safu.config import settings
from safu.exceptions import EncryptionUnavailable, SigningFailed

logger = logging.getLogger(__name__)


def get_cipher(keys: Optional[List[str]] = None) -> MultiFernet:
    """
    MultiFernet over the configured master keys, newest first.
    Encrypts with the first key and decrypts with any of them.
    """
    keys = keys if keys is not None else settings.encryption_keys
    if not keys:
        logger.error("WALLET_ENCRYPTION_KEY not configured")
        raise EncryptionUnavailable()
    try:
        return MultiFernet([Fernet(k.encode() if isinstance(k, str) else k) for k in keys])
    except (ValueError, TypeError) as e:
        logger.error(f"Invalid wallet encryption key: {e}")
        raise EncryptionUnavailable("Encryption key is malformed")


def encrypt_private_key_backend(raw_private_key: bytes, keys: Optional[List[str]] = None) -> str:
    return get_cipher(keys).encrypt(raw_private_key).decode("utf-8")


def decrypt_private_key_backend(encrypted_private_key: str, keys: Optional[List[str]] = None) -> bytes:
    try:
        return get_cipher(keys).decrypt(encrypted_private_key.encode("utf-8"))
    except InvalidToken:
        logger.error("Escrow key decryption failed (wrong master key or corrupted token)")
        raise SigningFailed("Failed to access escrow wallet")


def rotate_private_key(encrypted_private_key: str, keys: Optional[List[str]] = None) -> str:
    """Re-encrypt a token under the newest master key."""
    try:
        return get_cipher(keys).rotate(encrypted_private_key.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        raise SigningFailed("Escrow key cannot be decrypted with any configured master key")
