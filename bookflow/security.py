"""
Security helpers for the billing service
- Fernet encryption of OneClick card tokens at rest
- Shared-key guard for internal/operational endpoints
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from fastapi import Header, HTTPException

from . import config

logger = logging.getLogger(__name__)


def _build_cipher() -> Fernet:
    if config.CARD_TOKEN_ENCRYPTION_KEY:
        return Fernet(config.CARD_TOKEN_ENCRYPTION_KEY.encode())
    # Derive a valid 32-byte urlsafe key from SECRET_KEY
    digest = hashlib.sha256(config.SECRET_KEY.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


cipher_suite = _build_cipher()


def encrypt_token(token: str) -> str:
    """Encrypt a card token before storing it"""
    return cipher_suite.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt a stored card token"""
    try:
        return cipher_suite.decrypt(encrypted_token.encode()).decode()
    except InvalidToken as e:
        raise ValueError("Stored card token could not be decrypted") from e


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two strings in constant time to prevent timing attacks"""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


async def verify_internal_api_key(x_internal_api_key: Optional[str] = Header(default=None)):
    """FastAPI dependency guarding operational endpoints"""
    if not config.INTERNAL_API_KEY:
        logger.error("❌ INTERNAL_API_KEY not configured - rejecting internal request")
        raise HTTPException(status_code=503, detail="Internal API not configured")

    if not constant_time_compare(x_internal_api_key, config.INTERNAL_API_KEY):
        logger.warning("⚠️ Rejected internal request with invalid API key")
        raise HTTPException(status_code=401, detail="Invalid internal API key")
