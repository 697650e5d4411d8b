from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from pricing_api.core.config import settings
from pricing_api.core.database import SessionLocal, get_db
from pricing_api.core.security import decode_token
from pricing_api.models.tenant import Tenant
from pricing_api.models.user import User
from pricing_api.services.movement_service import MovementService


def get_tenant_slug(request: Request) -> str:
    tenant_slug = request.headers.get(settings.tenant_header)
    if tenant_slug:
        return tenant_slug
    # Fallback: subdomain e.g., tenant.myapp.com
    host = request.headers.get("host", "")
    parts = host.split(":")[0].split(".")
    if len(parts) >= 3:
        return parts[0]
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing tenant header")


def get_tenant(db: Session = Depends(get_db), tenant_slug: str = Depends(get_tenant_slug)) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.slug == tenant_slug).first()
    if not tenant or not tenant.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant


def get_current_user(
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(None),
    tenant: Tenant = Depends(get_tenant),
) -> User:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    token = authorization.split(" ", 1)[1].strip()
    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = db.query(User).filter(User.id == user_id, User.tenant_id == tenant.id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def require_paid_plan(
    tenant: Tenant = Depends(get_tenant),
    user: User = Depends(get_current_user),
) -> User:
    plan = (tenant.plan or "").strip().lower()
    if not plan or plan in settings.free_plan_names:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Stock movements are only available to subscribers. Upgrade your plan to access them.",
        )
    return user


def get_movement_service() -> MovementService:
    return MovementService(
        SessionLocal,
        max_retries=settings.movement_max_retries,
        retry_backoff=settings.movement_retry_backoff,
    )
