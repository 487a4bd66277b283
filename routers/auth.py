import hmac
import logging
from typing import Optional, Tuple

from fastapi import HTTPException, Request


def is_proxy_authenticated_request(request: Request) -> bool:
    """True when the request arrived through the add-on ingress proxy."""
    return bool(request.headers.get("x-ingress-path", "").strip())


def extract_secret(request: Request, body_secret: Optional[str] = None) -> Tuple[str, str]:
    """Return (secret, source); header wins over query, query over body."""
    header_secret = request.headers.get("x-job-secret", "").strip()
    if header_secret:
        return header_secret, "header"

    authorization = request.headers.get("authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        bearer = authorization[7:].strip()
        if bearer:
            return bearer, "bearer"

    query_secret = request.query_params.get("secret", "").strip()
    if query_secret:
        return query_secret, "query"

    if body_secret:
        body_secret = str(body_secret).strip()
        if body_secret:
            return body_secret, "body"

    return "", "missing"


def secrets_match(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def ensure_request_authorized(
    request: Request,
    job_secret: str,
    logger: logging.Logger,
    *,
    body_secret: Optional[str] = None,
    context_path: str = "",
) -> str:
    """Check the shared job secret; ingress-proxied requests are already authenticated."""
    endpoint = context_path or request.url.path
    if not job_secret:
        return "not_required"

    if is_proxy_authenticated_request(request):
        logger.debug("Auth bypass on %s via ingress", endpoint)
        return "ingress"

    provided, source = extract_secret(request, body_secret=body_secret)
    if not provided or not secrets_match(provided, job_secret):
        logger.warning(
            "Unauthorized on %s (source=%s, client=%s)",
            endpoint,
            source,
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    logger.debug("Auth OK on %s (source=%s)", endpoint, source)
    return source
