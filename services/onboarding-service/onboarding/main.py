"""FastAPI application wiring for the onboarding service."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable

import httpx
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import register_error_handlers
from .api.routes import router as v1_router
from .config import Settings, get_settings, validate_settings
from .domain.access import AccessControl
from .domain.administration import AccountAdministration
from .domain.audit import AuditTrail
from .domain.guardrails import MembershipGuardrails
from .domain.invitations import InvitationLifecycleManager, utcnow
from .domain.profile_security import ProfileSecurity
from .domain.registration import SelfServiceRegistrationGate
from .domain.retry import InviteRetryEngine
from .domain.targets import GhostUserReaper, InvitationTargetResolver
from .identity.gateway import HttpIdentityGateway, IdentityGateway
from .identity.lookup import IdentityEmailLookup, PaginatedEmailScan
from .repository import OnboardingRepository
from .security.rate_limiter import SignupRateLimiter
from .security.signup_lock import SignupLock, build_signup_lock

logger = logging.getLogger(__name__)

settings = get_settings()


def build_services(
    state: Any,
    settings: Settings,
    *,
    repository: OnboardingRepository,
    gateway: IdentityGateway,
    lock: SignupLock,
    email_lookup: IdentityEmailLookup | None = None,
    clock: Callable[[], Any] = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Assemble the domain services and attach them to ``state``."""
    email_lookup = email_lookup or PaginatedEmailScan(gateway)
    resolver = InvitationTargetResolver(repository, gateway, email_lookup)
    reaper = GhostUserReaper(gateway)
    engine = InviteRetryEngine(gateway, resolver, reaper, sleep=sleep)
    audit = AuditTrail(repository)
    access = AccessControl(repository, settings.platform_owner_email)

    invitations = InvitationLifecycleManager(
        repository,
        access,
        resolver,
        reaper,
        engine,
        audit,
        redirect_url=settings.invite_redirect_url,
        ttl_days=settings.invitation_ttl_days,
        max_retries=settings.invite_max_retries,
        clock=clock,
    )
    limiter = SignupRateLimiter(
        repository,
        per_ip=settings.signup_rate_limit_per_ip,
        per_email=settings.signup_rate_limit_per_email,
        window_seconds=settings.signup_rate_limit_window_seconds,
        clock=clock,
    )
    state.access = access
    state.invitations = invitations
    state.registration = SelfServiceRegistrationGate(
        repository,
        resolver,
        reaper,
        limiter,
        lock,
        ip_hash_salt=settings.self_signup_ip_hash_salt,
        enabled=settings.self_signup_enabled,
        trial_days=settings.trial_days,
        invitation_ttl_days=settings.invitation_ttl_days,
        engine=engine if settings.self_signup_send_invite else None,
        redirect_url=settings.invite_redirect_url,
        max_retries=settings.invite_max_retries,
        clock=clock,
        sleep=sleep,
    )
    state.administration = AccountAdministration(
        repository,
        gateway,
        access,
        MembershipGuardrails(repository),
        invitations,
        audit,
        password_reset_redirect_url=settings.password_reset_redirect_url,
        clock=clock,
    )
    state.profile_security = ProfileSecurity(
        repository,
        gateway,
        access,
        audit,
        redirect_url=settings.account_security_redirect_url,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, identity client, services) for the app lifecycle."""
    validate_settings(settings)
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    http_client = httpx.Client(timeout=settings.identity_timeout_seconds)
    app.state.pool = pool
    build_services(
        app.state,
        settings,
        repository=OnboardingRepository(pool),
        gateway=HttpIdentityGateway(http_client, settings.identity_url, settings.identity_service_key),
        lock=build_signup_lock(settings),
    )
    logger.info("onboarding service started (self-signup enabled: %s)", settings.self_signup_enabled)
    try:
        yield
    finally:
        http_client.close()
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for local frontend dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


register_error_handlers(app)
app.include_router(v1_router)
