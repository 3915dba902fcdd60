import os
import base64
import hashlib
import logging
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

# Fernet needs 32 url-safe base64-encoded bytes; derive them from whichever secret is configured
RAW_KEY = os.getenv("ENCRYPTION_KEY") or os.getenv("SECRET_KEY", "fallback-secret-key-at-least-32-chars-long")

key_bytes = hashlib.sha256(RAW_KEY.encode()).digest()
FERNET_KEY = base64.urlsafe_b64encode(key_bytes)
cipher_suite = Fernet(FERNET_KEY)

def encrypt_token(token: str) -> str:
    """Encrypts a channel access token before it is stored."""
    if not token:
        return None
    return cipher_suite.encrypt(token.encode()).decode()

def decrypt_token(encrypted_token: str) -> str:
    """Decrypts a stored access token. Returns None when the token cannot be read."""
    if not encrypted_token:
        return None
    try:
        return cipher_suite.decrypt(encrypted_token.encode()).decode()
    except InvalidToken:
        logger.error("Decryption failed: access token was encrypted with a different key")
        return None
