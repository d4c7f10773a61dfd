from typing import Annotated, Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from itsdangerous import BadSignature, URLSafeTimedSerializer
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

import config
from db import SessionDep, unit_of_work
from errors import AuthError, ConflictError
from models import Donor, Receiver, Role, User
from schemas import ApiResponse, Caller, LoginData, ProfileRead, TokenRead, UserCreate, UserRead

router = APIRouter(tags=["auth"])

serializer = URLSafeTimedSerializer(config.SECRET_KEY, salt="foodbridge-auth")
bearer_scheme = HTTPBearer(auto_error=False)


pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_session_token(user_id: int, role: Role) -> str:
    """
    Store user_id + role in the signed token.
    Example data:
        {"user_id": 3, "role": "DONOR"}
    """
    return serializer.dumps({"user_id": user_id, "role": Role(role).value})


def verify_session_token(token: str, max_age_seconds: int = config.TOKEN_MAX_AGE):
    """
    Returns dict {'user_id': ..., 'role': ...} if valid,
    or None if token is invalid/expired.
    """
    try:
        return serializer.loads(token, max_age=max_age_seconds)
    except BadSignature:
        return None


def get_caller(
    session: SessionDep,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Caller:
    """
    Resolve the bearer token to the Caller every store operation expects.
    Raises AuthError if the token is missing, invalid or expired.
    """
    if credentials is None or not credentials.credentials:
        raise AuthError("Access denied. No token provided")

    data = verify_session_token(credentials.credentials)
    if not data:
        raise AuthError("Token is invalid or expired")

    user = session.get(User, data.get("user_id"))
    if user is None:
        raise AuthError("Invalid token. User not found")

    # role is immutable, the stored one is authoritative
    return Caller(id=user.id, role=user.role)


CallerDep = Annotated[Caller, Depends(get_caller)]


@router.post("/register", status_code=201, response_model=ApiResponse[TokenRead])
def register(user_in: UserCreate, session: SessionDep):
    """
    Register a donor or receiver, creating the matching profile.
    """
    existing = session.exec(select(User).where(User.email == user_in.email)).first()
    if existing:
        raise ConflictError("User with this email already exists")

    user = User(
        email=user_in.email,
        name=user_in.name,
        role=user_in.role,
        password_hash=hash_password(user_in.password),
    )
    try:
        with unit_of_work(session):
            session.add(user)
            session.flush()
            profile = Donor if user_in.role == Role.DONOR else Receiver
            session.add(profile(user_id=user.id, phone=user_in.phone, address=user_in.address))
    except IntegrityError as exc:
        raise ConflictError("User with this email already exists") from exc
    session.refresh(user)

    token = create_session_token(user.id, user.role)
    return ApiResponse(
        message="User registered successfully",
        data=TokenRead(user=UserRead.model_validate(user), token=token),
    )


@router.post("/login", response_model=ApiResponse[TokenRead])
def login(payload: LoginData, session: SessionDep):
    """
    Log in with email + password and receive a bearer token.
    """
    user = session.exec(select(User).where(User.email == payload.email)).first()
    if user is None or not verify_password(payload.password, user.password_hash):
        raise AuthError("Invalid credentials")

    token = create_session_token(user.id, user.role)
    return ApiResponse(
        message="Login successful",
        data=TokenRead(user=UserRead.model_validate(user), token=token),
    )


@router.get("/me", response_model=ApiResponse[ProfileRead])
def read_me(caller: CallerDep, session: SessionDep):
    """
    Get info about the current user and their donor/receiver profile.
    """
    user = session.get(User, caller.id)
    return ApiResponse(data=ProfileRead.model_validate(user))
