"""Fernet symmetric encryption for exchange API credentials."""

from cryptography.fernet import Fernet, InvalidToken

from order_executor.config import settings

_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        key = settings.encryption_key
        if not key:
            raise RuntimeError(
                "OE_ENCRYPTION_KEY not set. Generate one with: "
                "python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        _fernet = Fernet(key.encode())
    return _fernet


def encrypt(plaintext: str) -> str:
    """Encrypt a secret; empty input stays empty so unset credentials remain unset."""
    if not plaintext:
        return ""
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    if not ciphertext:
        return ""
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as e:
        raise ValueError("Stored credential cannot be decrypted with the configured key") from e


def mask(secret: str) -> str:
    """Show only the last four characters of a secret."""
    if not secret:
        return ""
    return "*" * max(len(secret) - 4, 4) + secret[-4:]
