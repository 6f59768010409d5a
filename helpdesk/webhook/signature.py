import hashlib
import hmac


def _strip_wrapping_quotes(value: str) -> str:
    """Remove a single pair of wrapping quotes if present.

    Container / .env setups sometimes accidentally include quotes, e.g.
    WEBHOOK_SECRET="deadbeef..."
    """
    s = (value or "").strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        return s[1:-1].strip()
    return s


def compute_body_signature(secret: str, body: bytes) -> str:
    """hex(HMAC_SHA256(secret, raw_body)), the value a signing proxy puts in X-Webhook-Signature."""
    key = _strip_wrapping_quotes(secret).encode("utf-8")
    return hmac.new(key, body or b"", hashlib.sha256).hexdigest()


def verify_webhook_secret(
    secret: str,
    *,
    presented_secret: str | None = None,
    body: bytes | None = None,
    signature: str | None = None,
) -> tuple[bool, dict]:
    """Check a webhook call against the shared secret; returns (ok, safe_debug_info).

    Accepts either the plain shared secret (header the gateway was registered with)
    or an HMAC-SHA256 signature of the raw body (``sha256=`` prefix optional).
    """
    secret_norm = _strip_wrapping_quotes(secret)
    presented = _strip_wrapping_quotes(presented_secret or "")
    sig = (signature or "").strip()
    if "=" in sig and sig.lower().startswith("sha256="):
        sig = sig.split("=", 1)[1]

    ok = False
    if secret_norm and presented:
        ok = hmac.compare_digest(presented.encode("utf-8"), secret_norm.encode("utf-8"))
    if not ok and secret_norm and sig:
        expected = compute_body_signature(secret_norm, body or b"")
        ok = hmac.compare_digest(expected, sig.lower())

    # Safe debug info (no secrets, only lengths/prefixes) for logging on failure.
    debug = {
        "secret_len": len(secret_norm),
        "presented_len": len(presented),
        "signature_prefix": (sig[:8] + "…") if sig else "",
        "body_len": len(body or b""),
    }
    return ok, debug
