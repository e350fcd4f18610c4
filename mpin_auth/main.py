from __future__ import annotations

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from mpin_auth.clock import utcnow
from mpin_auth.credential_engine import CredentialEngine
from mpin_auth.database import SupabaseConfig, create_supabase_client
from mpin_auth.errors import AuthError
from mpin_auth.identity_repository import (
    IdentityStore,
    InMemoryIdentityStore,
    SupabaseIdentityStore,
    mask_phone,
    normalize_phone,
)
from mpin_auth.keys import KeyConfig, KeyCustodian
from mpin_auth.ledger import AttemptLedger, AttemptStore, InMemoryAttemptStore, SupabaseAttemptStore
from mpin_auth.lockout import DEFAULT_LOCK_DURATION, DEFAULT_MAX_FAILURES, LockoutPolicy
from mpin_auth.rate_limit import InMemoryRateLimiter, RateLimitSettings, enforce_auth_rate_limit
from mpin_auth.risk_engine import RiskScorer, RiskThresholds
from mpin_auth.security import SESSION_COOKIE_NAME, authenticate_session
from mpin_auth.sessions import SessionClaims, SessionIssuer, SessionSettings

load_dotenv()

DEFAULT_STORAGE_BACKEND = "memory"
DEFAULT_RISK_ALLOW_MAX = 30
DEFAULT_RISK_WARN_MAX = 60
DEFAULT_RATE_LIMIT_ENABLED = True
DEFAULT_RATE_LIMIT_REQUESTS = 10
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60
DEFAULT_ENVIRONMENT = "development"
DEFAULT_LOG_LEVEL = "INFO"
REQUEST_ID_HEADER = "X-Request-ID"
STORAGE_BACKENDS = ("memory", "supabase")
logger = logging.getLogger("mpin_auth")


def _configure_logging() -> None:
    log_level_name = os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper() or DEFAULT_LOG_LEVEL
    log_level = getattr(logging, log_level_name, logging.INFO)

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    else:
        logging.getLogger().setLevel(log_level)

    logger.setLevel(log_level)


_configure_logging()


class RegisterRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=32)
    encrypted_mpin: str = Field(..., alias="encryptedMpin", min_length=1, max_length=4096)
    fingerprint: str | None = Field(default=None, max_length=256)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class LoginRequest(RegisterRequest):
    pass


class VerifyTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)

    model_config = ConfigDict(extra="forbid")


class PublicKeyResponse(BaseModel):
    success: bool = True
    publicKey: str


class RegisterResponse(BaseModel):
    success: bool = True
    message: str
    token: str
    user: dict[str, Any]


class LoginResponse(RegisterResponse):
    riskScore: int = Field(..., ge=0, le=100)
    riskFlags: list[str]


class SessionResponse(BaseModel):
    success: bool = True
    user: dict[str, Any]


class MessageResponse(BaseModel):
    success: bool = True
    message: str


def _parse_cors_origins(raw_origins: str | None) -> list[str]:
    if not raw_origins:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5500",
            "http://127.0.0.1:5500",
        ]
    if raw_origins.strip() == "*":
        return ["*"]
    return [origin.strip() for origin in raw_origins.split(",") if origin.strip()]


def _parse_bool_env(raw_value: str | None, default: bool, variable_name: str) -> bool:
    if raw_value is None or not raw_value.strip():
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{variable_name} must be a boolean value (true/false).")


def _parse_int_env(variable_name: str, default: int) -> int:
    raw_value = os.getenv(variable_name, str(default)).strip()
    try:
        return int(raw_value)
    except ValueError as exc:
        raise ValueError(f"{variable_name} must be an integer value.") from exc


def _load_risk_thresholds() -> RiskThresholds:
    return RiskThresholds(
        allow_max=_parse_int_env("RISK_ALLOW_MAX", DEFAULT_RISK_ALLOW_MAX),
        warn_max=_parse_int_env("RISK_WARN_MAX", DEFAULT_RISK_WARN_MAX),
    )


def _load_lockout_policy() -> LockoutPolicy:
    default_minutes = int(DEFAULT_LOCK_DURATION.total_seconds() // 60)
    return LockoutPolicy(
        max_failures=_parse_int_env("LOCKOUT_MAX_FAILURES", DEFAULT_MAX_FAILURES),
        lock_duration=timedelta(minutes=_parse_int_env("LOCKOUT_DURATION_MINUTES", default_minutes)),
    )


def _load_rate_limit_settings() -> RateLimitSettings:
    enabled = _parse_bool_env(
        os.getenv("RATE_LIMIT_ENABLED"),
        DEFAULT_RATE_LIMIT_ENABLED,
        "RATE_LIMIT_ENABLED",
    )
    return RateLimitSettings(
        enabled=enabled,
        requests=_parse_int_env("RATE_LIMIT_REQUESTS", DEFAULT_RATE_LIMIT_REQUESTS),
        window_seconds=_parse_int_env("RATE_LIMIT_WINDOW_SECONDS", DEFAULT_RATE_LIMIT_WINDOW_SECONDS),
    )


def _load_storage_backend() -> str:
    backend = os.getenv("MPIN_STORAGE_BACKEND", DEFAULT_STORAGE_BACKEND).strip().lower() or DEFAULT_STORAGE_BACKEND
    if backend not in STORAGE_BACKENDS:
        raise ValueError("MPIN_STORAGE_BACKEND must be one of: memory, supabase.")
    return backend


def _load_secure_cookies() -> bool:
    environment = os.getenv("ENVIRONMENT", DEFAULT_ENVIRONMENT).strip().lower()
    return environment == "production"


def _build_stores(backend: str) -> tuple[IdentityStore, AttemptStore]:
    if backend == "supabase":
        config = SupabaseConfig.from_env()
        client = create_supabase_client(config)
        return (
            SupabaseIdentityStore(client, config.users_table),
            SupabaseAttemptStore(client, config.attempts_table),
        )
    return InMemoryIdentityStore(), InMemoryAttemptStore(clock=utcnow)


@asynccontextmanager
async def lifespan(app: FastAPI):
    custodian = KeyCustodian(KeyConfig.from_env())
    custodian.load_or_generate()

    storage_backend = _load_storage_backend()
    identities, attempt_store = _build_stores(storage_backend)
    ledger = AttemptLedger(attempt_store)
    session_issuer = SessionIssuer(SessionSettings.from_env())
    rate_limit_settings = _load_rate_limit_settings()

    engine = CredentialEngine(
        custodian=custodian,
        identities=identities,
        ledger=ledger,
        scorer=RiskScorer(ledger, _load_risk_thresholds()),
        sessions=session_issuer,
        lockout_policy=_load_lockout_policy(),
        clock=utcnow,
    )

    app.state.engine = engine
    app.state.session_issuer = session_issuer
    app.state.storage_backend = storage_backend
    app.state.rate_limit_settings = rate_limit_settings
    app.state.rate_limiter = InMemoryRateLimiter(settings=rate_limit_settings)
    app.state.secure_cookies = _load_secure_cookies()
    logger.info("service_started storage_backend=%s", storage_backend)

    yield


app = FastAPI(
    title="MPIN Authentication Service",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(os.getenv("CORS_ALLOWED_ORIGINS")),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_and_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER, "").strip() or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.exception(
            "request_failed request_id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
        )
        raise

    duration_ms = (time.perf_counter() - start_time) * 1000
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "request_complete request_id=%s method=%s path=%s status_code=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


def _auth_http_error(exc: AuthError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_payload())


def _set_session_cookie(response: Response, token: str) -> None:
    engine: CredentialEngine = app.state.engine
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=bool(getattr(app.state, "secure_cookies", False)),
        samesite="strict",
        max_age=int(engine.session_ttl.total_seconds()),
    )


def _claims_view(claims: SessionClaims) -> dict[str, Any]:
    return {
        "userId": claims.user_id,
        "phone": claims.phone,
        "iat": claims.issued_at,
        "exp": claims.expires_at,
    }


@app.get("/health")
def health_check() -> dict[str, str]:
    return {
        "status": "ok",
        "storage_backend": app.state.storage_backend,
        "service": "mpin-auth",
    }


@app.get(
    "/auth/public-key",
    response_model=PublicKeyResponse,
    dependencies=[Depends(enforce_auth_rate_limit)],
)
def get_public_key() -> PublicKeyResponse:
    return PublicKeyResponse(publicKey=app.state.engine.public_key().decode("ascii"))


@app.post(
    "/auth/register",
    response_model=RegisterResponse,
    status_code=201,
    dependencies=[Depends(enforce_auth_rate_limit)],
)
def register(request: Request, response: Response, payload: RegisterRequest) -> RegisterResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        phone = normalize_phone(payload.phone)
        result = app.state.engine.register(
            phone=phone,
            encrypted_pin=payload.encrypted_mpin,
            fingerprint=payload.fingerprint,
            ip=request.client.host if request.client else "unknown",
            user_agent=request.headers.get("user-agent", ""),
        )
    except AuthError as exc:
        logger.info("register_rejected request_id=%s code=%s", request_id, exc.code)
        raise _auth_http_error(exc) from exc
    except Exception as exc:
        logger.exception("register_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="Server error during registration.") from exc

    _set_session_cookie(response, result.token)
    return RegisterResponse(
        message="Registration successful! Welcome to SmartBank.",
        token=result.token,
        user=result.identity.public_view(),
    )


@app.post(
    "/auth/login",
    response_model=LoginResponse,
    dependencies=[Depends(enforce_auth_rate_limit)],
)
def login(request: Request, response: Response, payload: LoginRequest) -> LoginResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    try:
        phone = normalize_phone(payload.phone)
        result = app.state.engine.login(
            phone=phone,
            encrypted_pin=payload.encrypted_mpin,
            ip=request.client.host if request.client else "unknown",
            fingerprint=payload.fingerprint,
            user_agent=request.headers.get("user-agent", ""),
        )
    except AuthError as exc:
        logger.info("login_rejected request_id=%s code=%s", request_id, exc.code)
        raise _auth_http_error(exc) from exc
    except Exception as exc:
        logger.exception("login_internal_error request_id=%s", request_id)
        raise HTTPException(status_code=500, detail="Server error during login.") from exc

    _set_session_cookie(response, result.token)
    logger.info(
        "login_complete request_id=%s phone=%s risk_score=%s",
        request_id,
        mask_phone(result.identity.phone),
        result.risk.score,
    )
    return LoginResponse(
        message="Login successful! Welcome back.",
        token=result.token,
        user=result.identity.public_view(),
        riskScore=result.risk.score,
        riskFlags=result.risk.flag_names,
    )


@app.post(
    "/auth/verify-token",
    response_model=SessionResponse,
    dependencies=[Depends(enforce_auth_rate_limit)],
)
def verify_token(payload: VerifyTokenRequest) -> SessionResponse:
    claims = app.state.engine.verify_session(payload.token)
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")
    return SessionResponse(user=_claims_view(claims))


@app.get("/auth/session", response_model=SessionResponse)
def current_session(claims: SessionClaims = Depends(authenticate_session)) -> SessionResponse:
    return SessionResponse(user=_claims_view(claims))


@app.post("/auth/logout", response_model=MessageResponse)
def logout(response: Response) -> MessageResponse:
    response.delete_cookie(SESSION_COOKIE_NAME)
    return MessageResponse(message="Logged out successfully.")
