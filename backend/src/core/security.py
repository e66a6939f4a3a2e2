import hashlib
import hmac
import secrets

API_KEY_PREFIX = "inv_"
KEY_PREFIX_LENGTH = 8


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_urlsafe(32)


def generate_signing_secret() -> str:
    return secrets.token_urlsafe(48)


def hash_api_key(api_key: str) -> str:
    """One-way hash of a public API key, used for lookup."""
    return hashlib.sha256(api_key.encode()).hexdigest()


def _as_bytes(body: bytes | str) -> bytes:
    return body if isinstance(body, bytes) else body.encode()


def compute_signature(secret: str, timestamp: str, body: bytes | str) -> str:
    """HMAC-SHA256 over "{timestamp}.{body}", hex encoded."""
    message = f"{timestamp}.".encode() + _as_bytes(body)
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, timestamp: str, body: bytes | str, signature: str) -> bool:
    """Constant-time comparison of a presented signature against the expected one."""
    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())
