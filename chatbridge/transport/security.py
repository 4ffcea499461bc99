# chatbridge/transport/security.py
"""
Security utilities for the bridge API.

Security features:
- Constant-time key comparison (timing attack prevention)
- API key guard for the agent availability endpoint
- Bearer token guard for metrics
- Proxy-aware client IP resolution
- OWASP response headers
"""
import hmac

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from chatbridge.config import settings
from chatbridge.infra.logging_config import get_logger

logger = get_logger(__name__)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def _get_client_ip(request: Request) -> str:
    """
    Get the real client IP, respecting proxy headers if configured.

    SECURITY NOTE:
    - Only trust forwarding headers if you're behind a trusted proxy
    - Malicious clients can spoof them if there's no proxy
    - Set TRUST_PROXY_HEADERS=false if exposed directly to internet
    """
    client_ip = request.client.host if request.client else "unknown"

    if settings.trust_proxy_headers:
        # Cloudflare sets the original client address directly
        cf_ip = request.headers.get("CF-Connecting-IP")
        if cf_ip:
            return cf_ip.strip()

        # X-Forwarded-For: client, proxy1, proxy2
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            client_ip = real_ip.strip()

    return client_ip


def require_agents_api_key(request: Request):
    """
    Dependency for the agent availability endpoint.

    Requires the X-API-Key header to match AGENTS_API_KEY.
    An unset key is a server misconfiguration, not an open endpoint.
    """
    if not settings.agents_api_key:
        logger.error("Agents endpoint called but AGENTS_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error",
        )

    provided = request.headers.get("X-API-Key", "")
    if not provided or not hmac.compare_digest(provided, settings.agents_api_key):
        logger.warning(f"Invalid agents API key attempt from {_get_client_ip(request)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


def require_metrics_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Dependency for metrics/monitoring endpoints.

    If METRICS_TOKEN is not set the endpoint does not exist (404).

    Client example:
        curl -H "Authorization: Bearer your-metrics-token" http://host/metrics
    """
    if not settings.metrics_token:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found",  # Don't reveal endpoint exists
        )

    if not credentials:
        logger.warning("Metrics endpoint accessed without token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials, settings.metrics_token):
        logger.warning(
            "Invalid metrics token attempt",
            extra={"token_prefix": credentials.credentials[:4] if len(credentials.credentials) >= 4 else "***"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


class SecurityHeaders:
    """OWASP recommended response headers"""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # Strict for an API: no scripts/styles/frames
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        # HSTS (only in production with HTTPS)
        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    Sanitize error messages for external responses.
    In production: Generic messages
    In dev: Detailed messages
    """
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }

    return generic_messages.get(type(error).__name__, "An error occurred")
