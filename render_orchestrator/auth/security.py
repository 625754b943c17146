import hmac
import hashlib
import logging
from typing import Optional

from fastapi import Security, HTTPException, Request
from fastapi.security import APIKeyHeader

from render_orchestrator.settings import Settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

_DIGESTS = {
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}

def _settings(request: Request) -> Settings:
    return request.app.state.clients.settings

def compute_signature(secret: str, body: bytes, algorithm: str = "sha256") -> str:
    return hmac.new(secret.encode(), body, _DIGESTS[algorithm]).hexdigest()

def signature_matches(secret: str, body: bytes, provided: Optional[str], algorithm: str = "sha256") -> bool:
    """
    Constant-time check of a hex HMAC over the exact body bytes.
    Accepts an optional "<algorithm>=" prefix on the provided value.
    """
    if not provided:
        return False
    provided = provided.strip()
    # Headers arrive latin-1 decoded; a hex digest is always ASCII
    if not provided.isascii():
        return False
    prefix = f"{algorithm}="
    if provided.lower().startswith(prefix):
        provided = provided[len(prefix):]
    computed = compute_signature(secret, body, algorithm)
    return hmac.compare_digest(computed, provided.lower())

class WebhookSignatureVerifier:
    """
    Dependency guarding the worker callback endpoints.

    Without a configured secret, verification is skipped with a warning,
    except in production where callbacks are refused outright.
    Returns the raw body so the route parses exactly the bytes that were
    verified.
    """

    async def __call__(self, request: Request) -> bytes:
        settings = _settings(request)
        body = await request.body()

        if not settings.WEBHOOK_SECRET:
            if settings.ENVIRONMENT == "production":
                logger.error("WEBHOOK_SECRET not configured; refusing callback in production")
                raise HTTPException(status_code=503, detail="Webhook verification not configured")
            logger.warning("WEBHOOK_SECRET not configured, skipping signature verification")
            return body

        provided = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
        if not signature_matches(settings.WEBHOOK_SECRET, body, provided, settings.WEBHOOK_SIGNATURE_ALGORITHM):
            logger.warning("Rejected callback with %s signature", "invalid" if provided else "missing")
            raise HTTPException(status_code=401, detail="Invalid Signature")

        return body

verify_webhook_signature = WebhookSignatureVerifier()

async def require_api_key(request: Request, api_key: Optional[str] = Security(API_KEY_HEADER)):
    """Internal endpoints: X-API-Key must match API_SECRET_KEY when one is configured."""
    expected = _settings(request).API_SECRET_KEY
    if not expected:
        logger.warning("API_SECRET_KEY not configured, internal endpoint is unprotected")
        return

    if not api_key:
        raise HTTPException(status_code=403, detail="Missing API Key")
    if not hmac.compare_digest(api_key, expected):
        raise HTTPException(status_code=403, detail="Invalid API Key")
