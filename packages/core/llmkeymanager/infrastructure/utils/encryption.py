"""Encryption utilities for secure key material storage."""

import os
import stat
from base64 import b64decode, b64encode
from binascii import Error as BinasciiError
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

KEY_SIZE = 32
NONCE_SIZE = 12
SALT_SIZE = 16


class EncryptionError(Exception):
    """Raised when encryption/decryption operations fail."""

    pass


def generate_master_key() -> bytes:
    """Generate a random 256-bit master key."""
    return AESGCM.generate_key(bit_length=256)


def generate_salt() -> bytes:
    return os.urandom(SALT_SIZE)


def derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    """Derive a 256-bit key from a passphrase using PBKDF2-HMAC-SHA256.

    Args:
        passphrase: User supplied passphrase.
        salt: Random per-vault salt.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte key.
    """
    if not passphrase:
        raise EncryptionError("Passphrase cannot be empty")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def fingerprint(secret: str) -> str:
    """Return the SHA-256 hex digest of a plaintext secret.

    Used to reject duplicate keys without comparing plaintext.
    """
    digest = hashes.Hash(hashes.SHA256())
    digest.update(secret.encode("utf-8"))
    return digest.finalize().hex()


def load_or_create_key_file(path: str | Path) -> bytes:
    """Load the platform-held master key, creating it on first use.

    The file holds the base64 encoded key and is created with owner-only
    permissions.

    Raises:
        EncryptionError: If the file exists but does not hold a valid key.
    """
    key_path = Path(path).expanduser()
    if key_path.exists():
        return decode_master_key(key_path.read_text(encoding="utf-8").strip())

    key = generate_master_key()
    key_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, stat.S_IRUSR | stat.S_IWUSR)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(b64encode(key).decode("ascii"))
    return key


def decode_master_key(encoded: str) -> bytes:
    """Decode a base64 master key and check its length."""
    try:
        key = b64decode(encoded, validate=True)
    except (BinasciiError, ValueError) as e:
        raise EncryptionError(f"Invalid master key encoding: {e}") from e
    if len(key) != KEY_SIZE:
        raise EncryptionError(f"Master key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


class EncryptionService:
    """Service for encrypting and decrypting API key material using AES-256-GCM.

    Every encryption uses a fresh random 96-bit nonce. The caller binds the
    ciphertext to its record by passing the record id as associated data, so
    a ciphertext copied onto another record fails authentication.
    """

    def __init__(self, master_key: bytes) -> None:
        """Initialize EncryptionService with a 256-bit master key.

        Raises:
            EncryptionError: If the key has the wrong length.
        """
        if len(master_key) != KEY_SIZE:
            raise EncryptionError(f"Master key must be {KEY_SIZE} bytes, got {len(master_key)}")
        self._aead = AESGCM(master_key)

    def encrypt(self, plaintext: str, associated_data: bytes | None = None) -> tuple[str, str]:
        """Encrypt key material.

        Args:
            plaintext: Plain text API key to encrypt.
            associated_data: Authenticated but unencrypted context.

        Returns:
            Tuple of (base64 ciphertext, base64 nonce).

        Raises:
            EncryptionError: If encryption fails.
        """
        try:
            nonce = os.urandom(NONCE_SIZE)
            ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), associated_data)
        except Exception as e:
            raise EncryptionError(f"Failed to encrypt key material: {e}") from e
        return b64encode(ciphertext).decode("ascii"), b64encode(nonce).decode("ascii")

    def decrypt(
        self,
        ciphertext: str,
        nonce: str,
        associated_data: bytes | None = None,
    ) -> str:
        """Decrypt key material.

        Args:
            ciphertext: Base64 ciphertext produced by encrypt().
            nonce: Base64 nonce produced by encrypt().
            associated_data: The same associated data given to encrypt().

        Returns:
            Decrypted plain text API key.

        Raises:
            EncryptionError: If the ciphertext or nonce is malformed or fails
                authentication. Wrong plaintext is never returned.
        """
        try:
            raw_nonce = b64decode(nonce, validate=True)
            raw_ciphertext = b64decode(ciphertext, validate=True)
        except (BinasciiError, ValueError) as e:
            raise EncryptionError(f"Malformed ciphertext encoding: {e}") from e
        if len(raw_nonce) != NONCE_SIZE:
            raise EncryptionError(f"Nonce must be {NONCE_SIZE} bytes, got {len(raw_nonce)}")
        try:
            plaintext = self._aead.decrypt(raw_nonce, raw_ciphertext, associated_data)
        except InvalidTag as e:
            raise EncryptionError("Ciphertext failed authentication") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EncryptionError(f"Decrypted key material is not valid UTF-8: {e}") from e
