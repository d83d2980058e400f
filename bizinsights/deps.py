"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Iterable, Optional
from uuid import UUID

from fastapi import Cookie, Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import Integration, OrganizationMember, RoleEnum, User
from .security import JWTError, decode_token


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:3000"
    # Public base URL used when registering provider webhooks
    BACKEND_URL: str = "http://localhost:8000"
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"
    # sqladmin login; the panel refuses every login while unset
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: Optional[str] = None

    REDIS_URL: str = "redis://localhost:6379/0"

    # Shopify
    SHOPIFY_CLIENT_ID: Optional[str] = None
    SHOPIFY_CLIENT_SECRET: Optional[str] = None
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-10"

    # Stripe Connect
    STRIPE_CLIENT_ID: Optional[str] = None
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_SIGNATURE_TOLERANCE_SECONDS: int = 300

    # WooCommerce (global fallback; each store normally carries its own secret)
    WOOCOMMERCE_WEBHOOK_SECRET: Optional[str] = None

    # Google Analytics
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/auth/google-analytics/callback"

    # Sync behaviour
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    MANUAL_SYNC_LIMIT: int = 2
    MANUAL_SYNC_WINDOW_SECONDS: int = 120
    WEBHOOK_EVENT_RETENTION_DAYS: int = 90

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def _extract_token(access_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    raw = access_token or authorization
    if not raw:
        return None
    if raw.startswith("Bearer "):
        return raw[len("Bearer "):]
    return raw


def get_current_user(
    db: Session = Depends(get_db),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
    authorization: Optional[str] = Header(default=None),
) -> User:
    """Resolve the current user from the `access_token` cookie or Authorization header.

    The value is expected in the form "Bearer <jwt>"; the JWT subject is the
    user's email.
    """
    token = _extract_token(access_token, authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = db.query(User).filter(User.email == subject).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_membership(db: Session, user: User, organization_id: UUID) -> Optional[OrganizationMember]:
    return (
        db.query(OrganizationMember)
        .filter(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user.id,
        )
        .first()
    )


def require_membership(
    db: Session,
    user: User,
    organization_id: UUID,
    roles: Optional[Iterable[RoleEnum]] = None,
) -> OrganizationMember:
    """Raise 403 unless `user` belongs to the organization (with one of `roles`)."""
    membership = get_membership(db, user, organization_id)
    if not membership:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    if roles is not None and membership.role not in set(roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    return membership


def get_integration_for_user(
    db: Session,
    user: User,
    integration_id: UUID,
    roles: Optional[Iterable[RoleEnum]] = None,
) -> Integration:
    """Load an integration and check the caller's membership in its organization.

    A missing integration and a foreign one both answer 404 so ids do not leak
    across organizations.
    """
    integration = db.query(Integration).filter(Integration.id == integration_id).first()
    if not integration or not get_membership(db, user, integration.organization_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
    require_membership(db, user, integration.organization_id, roles)
    return integration


MANAGER_ROLES = (RoleEnum.owner, RoleEnum.admin)
