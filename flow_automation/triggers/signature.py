"""
Webhook signature: hex(hmac_sha256(body, secret)).
"""
import hashlib
import hmac
from typing import Optional, Union


def compute_signature(body: Union[bytes, str], secret: str) -> str:
    if isinstance(body, str):
        body = body.encode('utf-8')
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def verify_signature(body: Union[bytes, str], secret: str, signature: Optional[str]) -> bool:
    """
    Constant-time check of a signature header. A "sha256=" prefix is accepted.
    """
    if not signature:
        return False
    signature = signature.strip()
    if signature.lower().startswith('sha256='):
        signature = signature[len('sha256='):]
    return hmac.compare_digest(compute_signature(body, secret), signature.lower())
