import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import schemas
from auth.dependencies import get_current_user
from auth.security import hash_password
from database import get_db
from errors import ConflictError, NotFoundError
from models import User
from responses import envelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


def _public(user: User) -> dict:
    return schemas.User.model_validate(user).model_dump(mode="json")


@router.get("")
async def list_users(
    current_user: schemas.TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List users, e.g. to pick assignees."""
    users = db.query(User).order_by(User.username).all()
    return envelope([_public(user) for user in users])


@router.get("/{user_id}")
async def get_user(
    user_id: int,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError(f"User with ID {user_id} not found")
    return envelope(_public(user))


@router.put("/{user_id}")
async def update_user(
    user_id: int,
    update: schemas.UserUpdate,
    current_user: schemas.TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update your own profile. Other users' profiles are reported as not found."""
    if user_id != current_user.user_id:
        logger.info(f"User {current_user.user_id} attempted to update user {user_id}")
        raise NotFoundError(f"User with ID {user_id} not found")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError(f"User with ID {user_id} not found")

    changes = update.model_dump(exclude_unset=True)
    if changes.get("email") and changes["email"] != user.email:
        taken = db.query(User).filter(User.email == changes["email"], User.id != user_id).first()
        if taken:
            raise ConflictError("User with this email already exists")
        user.email = changes["email"]
    if "full_name" in changes:
        user.full_name = changes["full_name"]
    if changes.get("password"):
        user.password_hash = hash_password(changes["password"])

    db.commit()
    db.refresh(user)
    logger.info(f"User {user_id} updated fields={sorted(changes)}")
    return envelope(_public(user))
