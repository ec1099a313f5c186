import logging

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic.config import ACCESS_TOKEN_EXPIRE_MINUTES, SESSION_COOKIE_NAME
from clinic.db import get_db
from clinic.errors import NotFound, Unauthenticated, ValidationError
from clinic.models import Role, User
from clinic.schemas import ActivateRequest, MedicalAccessResponse, Token, UserCreate, UserPublic
from clinic.services.access_control import MedicalAccessResolver, get_access_resolver
from clinic.services.actors import actor_from_user
from clinic.services.auth_service import (
    create_user_token, get_current_user, hash_password, verify_activation_token, verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


async def get_user_by_email(db: AsyncSession, email: str):
    q = select(User).where(User.email == email.lower())
    res = await db.execute(q)
    return res.scalar_one_or_none()


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(user_in: UserCreate, db: AsyncSession = Depends(get_db)):
    """Patient self-registration."""
    existing_user = await get_user_by_email(db, user_in.email)
    if existing_user:
        raise ValidationError("Email already registered.")

    await db.execute(
        insert(User).values(
            email=user_in.email.lower(),
            password_hash=hash_password(user_in.password),
            role=Role.PATIENT.value,
            name=user_in.name,
            phone=user_in.phone,
        )
    )
    await db.commit()
    logger.info("Registered patient %s", user_in.email)
    return {"message": "User created successfully"}


@router.post("/login", response_model=Token)
async def login_for_access_token(
    response: Response,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db),
):
    user = await get_user_by_email(db, form_data.username)
    if not user or not user.password_hash or not verify_password(form_data.password, user.password_hash):
        raise Unauthenticated("Incorrect email or password")
    if not user.active:
        raise Unauthenticated("Account is inactive")

    access_token = create_user_token(user)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        access_token,
        httponly=True,
        samesite="lax",
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )
    return Token(access_token=access_token, token_type="bearer")


@router.post("/logout")
async def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE_NAME)
    return {"message": "Logged out"}


@router.get("/me", response_model=UserPublic)
async def read_me(current_user: User = Depends(get_current_user)):
    return current_user


@router.post("/activate")
async def activate_account(req: ActivateRequest, db: AsyncSession = Depends(get_db)):
    """Sets the password of an account created by an admin."""
    user_id = verify_activation_token(req.token)
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    user.password_hash = hash_password(req.password)
    user.active = True
    await db.commit()
    return {"message": "Account activated"}


@router.get("/verify-medical-access", response_model=MedicalAccessResponse)
async def verify_medical_access(
    resource_type: str = Query(..., min_length=1),
    resource_id: str = Query(..., min_length=1),
    current_user: User = Depends(get_current_user),
    resolver: MedicalAccessResolver = Depends(get_access_resolver),
):
    decision = await resolver.check(actor_from_user(current_user), resource_type, resource_id)
    return MedicalAccessResponse(authorized=decision.authorized)
