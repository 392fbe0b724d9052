import logging
from contextlib import asynccontextmanager
from datetime import datetime
import jwt
from fastapi import FastAPI, Depends, Request
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from common.auth import get_current_user_id
from common.error_handling import BusinessLogicError, ErrorCodes, NotFound, Unauthorized, add_error_handlers
from common.health import health_router
from common.redis_client import RedisClient, redis_client
from common.security import hash_password, mint_user_jwt, verify_password, verify_token
from common.settings import settings
from common.tracing import auth_tracer, tracing_middleware
from auth_service.db import engine, get_db, init_db
from auth_service.models import User

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield

app = FastAPI(title="Auth Service", version=settings.service_version, lifespan=lifespan)
add_error_handlers(app)
app.include_router(health_router("auth-service", engine))

@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, auth_tracer)

class Credentials(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)

    @field_validator("email")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.lower()

    @field_validator("password")
    @classmethod
    def _bcrypt_limit(cls, v: str) -> str:
        if len(v.encode("utf-8")) > 72:
            raise ValueError("password must be at most 72 bytes")
        return v

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    created_at: datetime
    updated_at: datetime

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut

def get_rate_limiter() -> RedisClient:
    return redis_client

def issue_token(user: User) -> TokenResponse:
    token = mint_user_jwt(sub=user.id, claims={"email": user.email})
    return TokenResponse(access_token=token, user=UserOut.model_validate(user))

@app.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(req: Credentials, db: Session = Depends(get_db)):
    if db.execute(select(User).where(User.email == req.email)).scalar_one_or_none():
        raise BusinessLogicError("Email already registered", code=ErrorCodes.EMAIL_TAKEN, field="email")
    user = User(email=req.email, password_hash=hash_password(req.password))
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise BusinessLogicError("Email already registered", code=ErrorCodes.EMAIL_TAKEN, field="email")
    logger.info("User registered", extra={"user_id": user.id})
    return issue_token(user)

@app.post("/auth/login", response_model=TokenResponse)
def login(req: Credentials, db: Session = Depends(get_db), limiter: RedisClient = Depends(get_rate_limiter)):
    limit = limiter.check_rate_limit(req.email, "login", settings.login_rate_limit, settings.login_rate_window_seconds)
    if not limit["allowed"]:
        raise BusinessLogicError(
            "Too many login attempts",
            code=ErrorCodes.RATE_LIMIT_EXCEEDED,
            context={"retry_after": limit["retry_after"]},
        )
    user = db.execute(select(User).where(User.email == req.email)).scalar_one_or_none()
    if user is None or not verify_password(req.password, user.password_hash):
        raise BusinessLogicError("Invalid email or password", code=ErrorCodes.INVALID_CREDENTIALS)
    return issue_token(user)

@app.get("/auth/introspect")
def introspect(token: str):
    try:
        return verify_token(token)
    except jwt.InvalidTokenError as e:
        raise Unauthorized(str(e))

@app.get("/users/{user_id}", response_model=UserOut)
def find_user(user_id: str, _: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found", code=ErrorCodes.USER_NOT_FOUND)
    return user
