"""
Bearer token helpers shared by the verifier and the HTTP layer.
"""
import logging
from typing import Dict, Any, Optional

import jwt

logger = logging.getLogger(__name__)


def decode_token_unsafe(token: str) -> Optional[Dict[str, Any]]:
    """Decode JWT without verification (for logging only, never for identity)."""
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except Exception as e:
        logger.warning(f"Failed to decode token: {e}")
        return None


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """Extract token from Authorization header."""
    if not auth_header:
        return None
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def get_token_preview(token: str) -> str:
    """Get safe preview of token for logging (first and last 10 chars)"""
    if len(token) < 20:
        return "token_too_short"
    return f"{token[:10]}...{token[-10:]}"
