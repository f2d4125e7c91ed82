import asyncio
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status

from finance_tracker.api.dependencies import get_auth
from finance_tracker.api.limits import auth_limit
from finance_tracker.api.schemas import LoginRequest, RegisterRequest
from finance_tracker.services.auth import AuthService

router = APIRouter()


@router.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
@auth_limit
async def register(
    request: Request,
    payload: RegisterRequest,
    auth: Annotated[AuthService, Depends(get_auth)],
) -> dict[str, Any]:
    result = await asyncio.to_thread(auth.register, payload.email, payload.password, payload.default_currency)
    return result.to_payload("User created successfully")


@router.post("/api/auth/login")
@auth_limit
async def login(
    request: Request,
    payload: LoginRequest,
    auth: Annotated[AuthService, Depends(get_auth)],
) -> dict[str, Any]:
    result = await asyncio.to_thread(auth.login, payload.email, payload.password)
    return result.to_payload("Login successful")
