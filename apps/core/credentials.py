from __future__ import annotations

import base64
import hashlib
import json
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings


def _derive_fernet() -> Fernet:
    """
    Derive a Fernet key from CREDENTIALS_ENCRYPTION_SECRET (or SECRET_KEY fallback).
    """
    secret = getattr(settings, "CREDENTIALS_ENCRYPTION_SECRET", None) or settings.SECRET_KEY or ""
    key_bytes = hashlib.sha256(str(secret).encode("utf-8")).digest()  # 32 bytes
    return Fernet(base64.urlsafe_b64encode(key_bytes))


def seal_cookies(cookies: Dict[str, str]) -> str:
    """Encrypt upstream session cookies for storage in the Django session."""
    payload = json.dumps(cookies, separators=(",", ":")).encode("utf-8")
    return _derive_fernet().encrypt(payload).decode("ascii")


def open_cookies(blob: Optional[str]) -> Dict[str, str]:
    """
    Decrypt a blob produced by `seal_cookies`.
    A missing or tampered blob yields no cookies; the next upstream call then answers 401.
    """
    if not blob:
        return {}
    try:
        plaintext = _derive_fernet().decrypt(blob.encode("ascii"))
    except InvalidToken:
        return {}
    data = json.loads(plaintext.decode("utf-8"))
    return {str(k): str(v) for k, v in data.items()} if isinstance(data, dict) else {}


SESSION_COOKIES_KEY = "engine_cookies"


def cookies_from_session(session) -> Dict[str, str]:
    return open_cookies(session.get(SESSION_COOKIES_KEY))
