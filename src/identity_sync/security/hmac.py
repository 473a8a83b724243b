from __future__ import annotations
import hmac
import hashlib
import time
from fastapi import HTTPException


def sign_payload(body: bytes, secret: str, ts: int | None = None) -> str:
    """Signature header value "<unix ts>,<hex sha256 hmac of '<ts>.' + body>"."""
    ts = int(time.time()) if ts is None else ts
    digest = hmac.new(secret.encode(), msg=f"{ts}.".encode() + body, digestmod=hashlib.sha256).hexdigest()
    return f"{ts},{digest}"


def verify_hmac(signature: str, body: bytes, secret: str, tolerance_seconds: int = 300):
    try:
        ts_str, sig = signature.split(",", 1)
        ts = int(ts_str)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid signature header")
    if abs(time.time() - ts) > tolerance_seconds:
        raise HTTPException(status_code=401, detail="signature timestamp expired")
    expected = sign_payload(body, secret, ts).split(",", 1)[1]
    if not hmac.compare_digest(expected, sig):
        raise HTTPException(status_code=401, detail="invalid signature")
