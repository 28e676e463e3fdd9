import hashlib
import hmac
from typing import Optional, Union

SIGNATURE_PREFIX = "sha256="


def generate_signature(secret: str, payload: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 digest of the payload."""
    if isinstance(payload, str):
        payload = payload.encode()
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: Union[str, bytes], signature: Optional[str]) -> bool:
    """Constant-time check of a hex signature, with or without the ``sha256=`` prefix."""
    if not secret or not signature:
        return False

    candidate = signature.strip()
    if candidate.lower().startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX):]

    expected = generate_signature(secret, payload)
    return hmac.compare_digest(expected.encode(), candidate.lower().encode())
