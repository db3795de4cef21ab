"""
API Dependencies

FastAPI dependency injection for authentication and the engine's services.

Security: JWT tokens are verified cryptographically using Supabase JWKS (ES256)
with HS256 fallback via the JWT secret. Never decode without verification.

Datastore scopes: user-facing reads go through the scoped client; webhook
handling, cancellation and diagnostics go through the privileged client.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Optional

import jwt
from jwt import PyJWKClient
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from billing_sync.config.plans import PlanCatalog, build_plan_catalog
from billing_sync.config.settings import get_settings
from billing_sync.infrastructure.db.database import (
    DatastoreClient,
    get_privileged_client,
    get_scoped_client,
)
from billing_sync.infrastructure.db.repositories import (
    SubscriptionRepository,
    WebhookEventRepository,
)
from billing_sync.infrastructure.payments.stripe_service import (
    StripeService,
    get_stripe_service,
)
from billing_sync.infrastructure.services.cancellation_service import (
    CancellationEnforcer,
    SubscriptionCancellationService,
)
from billing_sync.infrastructure.services.event_handlers import (
    EventDispatcher,
    SubscriptionEventHandlers,
)
from billing_sync.infrastructure.services.reconciliation_service import ReconciliationService
from billing_sync.infrastructure.services.webhook_ingestion import WebhookIngestionGateway


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Cached JWKS client; keys are not re-fetched on every request.
# PyJWKClient caches keys internally and refreshes ~every 10 min.
_jwks_client: Optional[PyJWKClient] = None


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller, taken from verified JWT claims."""
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin" or self.user_id in get_settings().admin_user_ids


def _get_jwks_client() -> PyJWKClient:
    """Return a singleton PyJWKClient for the Supabase JWKS endpoint."""
    global _jwks_client
    if _jwks_client is None:
        settings = get_settings()
        jwks_url = f"{settings.supabase_url}/auth/v1/.well-known/jwks.json"
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True)
    return _jwks_client


def _decode_with_jwks(token: str, issuer: str) -> dict:
    """Verify JWT using Supabase JWKS endpoint (ES256 asymmetric keys)."""
    client = _get_jwks_client()
    signing_key = client.get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=["ES256"],
        issuer=issuer,
        audience="authenticated",
        options={"require": ["exp", "sub", "iss"]},
    )


def _decode_with_secret(token: str, secret: str, issuer: str) -> dict:
    """Verify JWT using HS256 symmetric secret (legacy Supabase signing)."""
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        issuer=issuer,
        audience="authenticated",
        options={"require": ["exp", "sub", "iss"]},
    )


def verify_token(token: str) -> dict:
    """
    Verify a Supabase JWT and return its claims.

    Verification strategy (in order):
      1. JWKS (ES256), with automatic key rotation.
      2. HS256 with ``SUPABASE_JWT_SECRET`` for legacy signing.

    Raises:
        HTTPException 401: token expired, or invalid.
    """
    settings = get_settings()
    issuer = f"{settings.supabase_url}/auth/v1"

    payload: Optional[dict] = None

    # --- Strategy 1: JWKS (ES256) ---
    try:
        payload = _decode_with_jwks(token, issuer)
    except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as jwks_err:
        logger.debug("JWKS verification failed, trying HS256 fallback: %s", jwks_err)

    # --- Strategy 2: HS256 fallback ---
    if payload is None and settings.supabase_jwt_secret:
        try:
            payload = _decode_with_secret(
                token, settings.supabase_jwt_secret, issuer
            )
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
            )
        except jwt.InvalidTokenError as e:
            logger.warning("HS256 JWT verification also failed: %s", e)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    return payload


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CallerIdentity:
    """
    Authenticate the caller from a Supabase bearer token.

    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(credentials.credentials)

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )

    app_metadata = payload.get("app_metadata") or {}
    return CallerIdentity(
        user_id=user_id,
        email=payload.get("email"),
        role=app_metadata.get("role"),
    )


async def require_admin(
    identity: CallerIdentity = Depends(get_current_identity),
) -> CallerIdentity:
    """Allow only callers with the admin role or a configured admin user id."""
    if not identity.is_admin:
        logger.warning(f"Non-admin user {identity.user_id} attempted an admin operation")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return identity


# =============================================================================
# Service Providers
# =============================================================================

PrivilegedClientDep = Annotated[DatastoreClient, Depends(get_privileged_client)]
ScopedClientDep = Annotated[DatastoreClient, Depends(get_scoped_client)]
ProviderDep = Annotated[StripeService, Depends(get_stripe_service)]


def get_plan_catalog() -> PlanCatalog:
    return build_plan_catalog()


def get_scoped_subscription_repository(client: ScopedClientDep) -> SubscriptionRepository:
    """Repository for user-facing reads."""
    return SubscriptionRepository(client)


def get_privileged_subscription_repository(client: PrivilegedClientDep) -> SubscriptionRepository:
    """Repository for webhook, cancellation and diagnostic writes."""
    return SubscriptionRepository(client)


def get_webhook_event_repository(client: PrivilegedClientDep) -> WebhookEventRepository:
    return WebhookEventRepository(client)


ScopedSubscriptionRepoDep = Annotated[
    SubscriptionRepository,
    Depends(get_scoped_subscription_repository),
]
PrivilegedSubscriptionRepoDep = Annotated[
    SubscriptionRepository,
    Depends(get_privileged_subscription_repository),
]
WebhookEventRepoDep = Annotated[
    WebhookEventRepository,
    Depends(get_webhook_event_repository),
]


def get_cancellation_enforcer(repo: PrivilegedSubscriptionRepoDep) -> CancellationEnforcer:
    return CancellationEnforcer(repo)


EnforcerDep = Annotated[CancellationEnforcer, Depends(get_cancellation_enforcer)]


def get_event_handlers(
    repo: PrivilegedSubscriptionRepoDep,
    provider: ProviderDep,
    enforcer: EnforcerDep,
    plans: Annotated[PlanCatalog, Depends(get_plan_catalog)],
) -> SubscriptionEventHandlers:
    return SubscriptionEventHandlers(repo, provider, enforcer, plans)


EventHandlersDep = Annotated[SubscriptionEventHandlers, Depends(get_event_handlers)]


def get_ingestion_gateway(
    provider: ProviderDep,
    audit: WebhookEventRepoDep,
) -> WebhookIngestionGateway:
    return WebhookIngestionGateway(provider, audit)


def get_event_dispatcher(
    handlers: EventHandlersDep,
    audit: WebhookEventRepoDep,
) -> EventDispatcher:
    return EventDispatcher(handlers, audit)


def get_reconciliation_service(
    repo: PrivilegedSubscriptionRepoDep,
    provider: ProviderDep,
    enforcer: EnforcerDep,
    handlers: EventHandlersDep,
) -> ReconciliationService:
    return ReconciliationService(repo, provider, enforcer, handlers)


def get_cancellation_service(
    repo: PrivilegedSubscriptionRepoDep,
    enforcer: EnforcerDep,
    provider: ProviderDep,
) -> SubscriptionCancellationService:
    return SubscriptionCancellationService(repo, enforcer, provider)


# Type aliases for route signatures
CurrentIdentityDep = Annotated[CallerIdentity, Depends(get_current_identity)]
AdminIdentityDep = Annotated[CallerIdentity, Depends(require_admin)]
IngestionGatewayDep = Annotated[WebhookIngestionGateway, Depends(get_ingestion_gateway)]
EventDispatcherDep = Annotated[EventDispatcher, Depends(get_event_dispatcher)]
ReconciliationServiceDep = Annotated[ReconciliationService, Depends(get_reconciliation_service)]
CancellationServiceDep = Annotated[
    SubscriptionCancellationService,
    Depends(get_cancellation_service),
]
