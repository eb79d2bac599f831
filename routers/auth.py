from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, EmailStr

from utils.otp_adapter import AuthContext
from utils.otp_config import OtpAdapterConfig
from utils.otp_errors import OtpError


router = APIRouter(prefix="/auth/otp", tags=["auth"])
bearer = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)

JWT_ALG = os.getenv("JWT_ALG", "HS256")


def get_otp_config(request: Request) -> OtpAdapterConfig:
    config = getattr(request.app.state, "otp", None)
    if config is None:
        raise HTTPException(503, "OTP adapter not initialized")
    return config


def get_auth_context(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> AuthContext:
    """
    Privileged only for a valid, unexpired admin JWT signed with
    OTP_ADMIN_JWT_SECRET. No secret configured means nobody is privileged.
    """
    secret = os.getenv("OTP_ADMIN_JWT_SECRET")
    if not secret or not creds or not creds.credentials:
        return AuthContext(privileged=False)
    try:
        payload = jwt.decode(creds.credentials, secret, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(401, "Invalid token")
    return AuthContext(privileged=payload.get("is_admin") is True)


def _raise_http(e: OtpError):
    raise HTTPException(e.status_code, e.message) from e


class OtpRequestIn(BaseModel):
    email: EmailStr


@router.post("/request")
async def request_otp(payload: OtpRequestIn, config: OtpAdapterConfig = Depends(get_otp_config)):
    try:
        await config.module.challenge({"email": str(payload.email)}, None, config)
    except OtpError as e:
        _raise_http(e)
    return {"ok": True, "message": "OTP sent to your email."}


class OtpVerifyIn(BaseModel):
    email: EmailStr
    otp: str


@router.post("/verify")
async def verify_otp(
    payload: OtpVerifyIn,
    config: OtpAdapterConfig = Depends(get_otp_config),
    context: AuthContext = Depends(get_auth_context),
):
    auth_data = {"email": str(payload.email), "otp": payload.otp.strip()}
    try:
        await config.module.validate_auth_data(auth_data, config, context)
    except OtpError as e:
        _raise_http(e)
    return {"ok": True}
