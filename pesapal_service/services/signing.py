import hashlib
import hmac
import json
from typing import Any, Optional


def _normalize(value: Any) -> Any:
    # checkout runs in JavaScript, where 500.0 serializes as 500
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def canonical_json(metadata: dict) -> bytes:
    """Stable serialization: keys sorted at every level, no whitespace."""
    return json.dumps(
        _normalize(metadata),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sign_metadata(metadata: dict, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_json(metadata), hashlib.sha256).hexdigest()


def verify_metadata_signature(metadata: dict, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = sign_metadata(metadata, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))
