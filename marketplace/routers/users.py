from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from marketplace.constants import Role
from marketplace.deps import get_auth_service, get_users_service
from marketplace.schemas import UserCreateIn, UserOut, UserUpdateIn
from marketplace.security import get_current_user, get_optional_user, require_admin
from marketplace.services.auth_service import AuthService
from marketplace.services.users_service import to_public
from marketplace.utils.logger import get_logger

logger = get_logger("users_router")

router = APIRouter(prefix="/users", tags=["users"])

# API (camelCase) -> model (snake_case)
_UPDATE_FIELDS = {
    "email": "email",
    "roles": "roles",
    "registrationType": "registration_type",
    "metadata": "metadata",
}


@router.post("", response_model=UserOut)
async def route_create_user(
    payload: UserCreateIn,
    current=Depends(get_optional_user),
    users=Depends(get_users_service),
    auth: AuthService = Depends(get_auth_service),
):
    """Create or return the user with this phone (idempotent), then send a verification OTP.
    Roles other than client may only be assigned by an admin.
    """
    if payload.roles and any(r != Role.CLIENT for r in payload.roles):
        if current is None or Role.ADMIN not in current.roles:
            raise HTTPException(status_code=403, detail="Only admins can assign roles")
    user = await users.create(
        payload.phoneE164,
        email=payload.email,
        roles=payload.roles,
        metadata=payload.metadata,
        registration_type=payload.registrationType,
    )
    await auth.issue_otp(payload.phoneE164)
    return to_public(user)


@router.get("/me", response_model=UserOut)
async def route_me(current=Depends(get_current_user)):
    return to_public(current)


@router.get("", response_model=Optional[UserOut])
async def route_find_by_phone(
    phone: str = Query(..., examples=["+15551234567"]),
    users=Depends(get_users_service),
):
    """Lookup by phone for client-side pre-checks; ``null`` when unknown."""
    user = await users.find_by_phone(phone.strip())
    return to_public(user) if user else None


@router.get("/{user_id}", response_model=UserOut)
async def route_get_user(user_id: str, users=Depends(get_users_service)):
    user = await users.find_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return to_public(user)


@router.patch("/{user_id}", response_model=UserOut)
async def route_update_user(
    user_id: str,
    payload: UserUpdateIn,
    current=Depends(get_current_user),
    users=Depends(get_users_service),
):
    """Owner or admin may update; only admins may change roles."""
    is_admin = Role.ADMIN in current.roles
    if str(current.id) != user_id and not is_admin:
        raise HTTPException(status_code=403, detail="Insufficient permissions")

    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "roles" in changes and not is_admin:
        raise HTTPException(status_code=403, detail="Only admins can change roles")

    fields = {_UPDATE_FIELDS[k]: v for k, v in changes.items()}
    user = await users.update(user_id, fields)
    return to_public(user)


@router.post("/{user_id}/block", response_model=UserOut)
async def route_block_user(
    user_id: str,
    admin=Depends(require_admin),
    users=Depends(get_users_service),
):
    user = await users.block_user(user_id)
    logger.info(f"User {user_id} blocked by admin {admin.id}")
    return to_public(user)
