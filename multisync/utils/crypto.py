"""
Credential encryption and secret hygiene

Access tokens are Fernet-encrypted before they reach the persisted store.
Short-lived secrets (recovery keys) are held in bytearrays so they can be
overwritten in place once used.
"""
import os
import stat
from pathlib import Path
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from .logger import get_logger

logger = get_logger('crypto')


class TokenCrypto:
    """
    Access token encryption/decryption.

    Example:
        >>> crypto = TokenCrypto(TokenCrypto.generate_key())
        >>> sealed = crypto.encrypt('syt_abc')
        >>> crypto.decrypt(sealed)
        'syt_abc'
    """

    def __init__(self, key: Union[str, bytes]):
        """
        Args:
            key: A urlsafe base64 Fernet key
        """
        if not key:
            raise ValueError('TokenCrypto requires an encryption key')
        self._fernet = Fernet(key.encode('utf-8') if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token, returning the Fernet token as text."""
        if not plaintext:
            return ''
        return self._fernet.encrypt(plaintext.encode('utf-8')).decode('utf-8')

    def decrypt(self, ciphertext: str) -> Optional[str]:
        """
        Decrypt a stored token.

        Returns:
            The plaintext token, or None when the ciphertext was produced with
            another key (the stored session is then unusable)
        """
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode('utf-8')).decode('utf-8')
        except InvalidToken:
            logger.warning("[TokenCrypto] Stored token could not be decrypted with the configured key")
            return None

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key."""
        return Fernet.generate_key().decode('utf-8')

    @classmethod
    def from_key_file(cls, path: Union[str, Path]) -> 'TokenCrypto':
        """Load the key stored at ``path``, creating it (mode 0600) if missing."""
        path = Path(path)
        if path.exists():
            key = path.read_text(encoding='utf-8').strip()
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            key = cls.generate_key()
            # Created owner-only; O_EXCL fails if another process wrote it first
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, stat.S_IRUSR | stat.S_IWUSR)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(key)
            logger.info(f"[TokenCrypto] Generated new token key at {path}")
        return cls(key)


def to_secret_buffer(secret: Union[str, bytes, bytearray]) -> bytearray:
    """Copy a secret into a mutable buffer.

    A bytearray argument is used as-is so the caller's copy is zeroed along
    with ours.
    """
    if isinstance(secret, bytearray):
        return secret
    if isinstance(secret, str):
        return bytearray(secret.encode('utf-8'))
    return bytearray(secret)


def zero_buffer(buf: Optional[bytearray]) -> None:
    """Overwrite every byte of ``buf`` with zero."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


def is_zeroed(buf: Optional[bytearray]) -> bool:
    return buf is None or not any(buf)
