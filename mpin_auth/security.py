from __future__ import annotations

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mpin_auth.sessions import SessionClaims, SessionIssuer

SESSION_COOKIE_NAME = "smartbank_token"
_bearer_header = HTTPBearer(auto_error=False)


def _resolve_token(request: Request, bearer_credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if bearer_credentials and bearer_credentials.scheme.lower() == "bearer" and bearer_credentials.credentials:
        return bearer_credentials.credentials
    cookie_token = request.cookies.get(SESSION_COOKIE_NAME, "").strip()
    return cookie_token or None


def authenticate_session(
    request: Request,
    bearer_credentials: HTTPAuthorizationCredentials | None = Security(_bearer_header),
) -> SessionClaims:
    issuer: SessionIssuer | None = getattr(request.app.state, "session_issuer", None)
    if issuer is None:
        raise HTTPException(status_code=500, detail="Session verification is not configured.")

    token = _resolve_token(request, bearer_credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required. Please login.")

    claims = issuer.verify(token)
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token. Please login again.")

    request.state.session_claims = claims
    return claims
