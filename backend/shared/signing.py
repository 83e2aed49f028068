"""HMAC-SHA256 signatures for webhooks in both directions."""

import hmac
import hashlib
from typing import Union

from shared.config import WEBHOOK_SECRET


def sign_payload(payload: Union[str, bytes], secret: str = WEBHOOK_SECRET) -> str:
    if isinstance(payload, str):
        payload = payload.encode()
    sig = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"sha256={sig}"


def validate_signature(payload: bytes, signature: str, secret: str = WEBHOOK_SECRET) -> bool:
    return hmac.compare_digest(sign_payload(payload, secret), signature)
