"""Encryption at rest for upstream credentials.

Upstream usernames and passwords are stored as Fernet tokens (AES-128-CBC +
HMAC-SHA256). VREGISTRY_ENCRYPTION_KEY holds one key, or several separated
by commas to rotate: the first key encrypts, every key is tried on decrypt.
Without a key, credentials cannot be stored and upstreams run anonymous.
"""

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from vregistry.logging_config import get_logger

logger = get_logger(__name__)

_cipher: MultiFernet | None = None


def init_encryption(key: str | None = None) -> None:
    """Load the credential keys. Called once at worker startup."""
    global _cipher  # noqa: PLW0603

    if key is None:
        from vregistry.config import settings

        key = settings.encryption_key

    keys = [k.strip() for k in (key or "").split(",") if k.strip()]
    if not keys:
        logger.warning(
            "No encryption key configured (VREGISTRY_ENCRYPTION_KEY); "
            "upstream credentials will be rejected"
        )
        _cipher = None
        return

    try:
        _cipher = MultiFernet([Fernet(k.encode()) for k in keys])
    except ValueError as e:
        logger.error("Invalid encryption key", error=str(e))
        _cipher = None
        return
    logger.info("Credential encryption initialized", keys=len(keys))


def is_encryption_available() -> bool:
    return _cipher is not None


def encrypt_credential(plaintext: str) -> str:
    """Encrypt a username or password with the primary key."""
    if _cipher is None:
        raise RuntimeError(
            "Encryption not configured. Set VREGISTRY_ENCRYPTION_KEY to store upstream credentials."
        )
    return _cipher.encrypt(plaintext.encode()).decode()


def decrypt_credential(token: str) -> str:
    """Decrypt a stored credential with whichever configured key produced it."""
    if _cipher is None:
        raise RuntimeError("Encryption not configured.")
    try:
        return _cipher.decrypt(token.encode()).decode()
    except InvalidToken:
        raise ValueError("Failed to decrypt credential: key mismatch or corrupted data") from None

