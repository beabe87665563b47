import logging

from fastapi import APIRouter, Depends, Request

from campus.api.deps import get_identity_service
from campus.core.api_response import success_response_payload
from campus.core.errors import AuthError
from campus.core.metrics import increment_counter
from campus.core.observability import log_business_event
from campus.core.permissions import permissions_matrix_payload
from campus.core.security import create_access_token, get_current_user
from campus.core.visibility import private_user_payload
from campus.db.models.user import User
from campus.schemas.auth import (
    ForgotPasswordIn,
    LoginIn,
    RegisterIn,
    ResetPasswordIn,
    UpdatePasswordIn,
    VerifyResetCodeIn,
)
from campus.services.identity import IdentityService

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

RESET_REQUESTED_MESSAGE = "If the email exists, a password reset code has been sent"


def _token_payload(user: User) -> dict:
    return {"user": private_user_payload(user), "token": create_access_token(user)}


@router.post("/register", status_code=201)
def register(
    payload: RegisterIn,
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
):
    user = identity.register(payload)
    increment_counter("auth_register_total", result="created")
    log_business_event(logger, request, event="auth.register", user_id=user.id)
    return success_response_payload(
        request,
        message="User registered successfully. Please wait for administrator verification.",
        data=_token_payload(user),
    )


@router.post("/login")
def login(
    payload: LoginIn,
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
):
    try:
        user = identity.authenticate(payload.email, payload.password)
    except AuthError:
        increment_counter("auth_login_total", kind="user", result="failed")
        raise
    increment_counter("auth_login_total", kind="user", result="ok")
    log_business_event(logger, request, event="auth.login", user_id=user.id)
    return success_response_payload(request, message="Login successful", data=_token_payload(user))


@router.post("/superadmin/login")
def superadmin_login(
    payload: LoginIn,
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
):
    try:
        user = identity.authenticate_superadmin(payload.email, payload.password)
    except AuthError:
        increment_counter("auth_login_total", kind="superadmin", result="failed")
        raise
    increment_counter("auth_login_total", kind="superadmin", result="ok")
    log_business_event(logger, request, event="auth.superadmin_login", user_id=user.id)
    return success_response_payload(request, message="Superadmin login successful", data=_token_payload(user))


@router.get("/me")
def me(request: Request, current_user: User = Depends(get_current_user)):
    return success_response_payload(request, data=private_user_payload(current_user))


@router.get("/permissions-matrix")
def permissions_matrix(request: Request, _: User = Depends(get_current_user)):
    return success_response_payload(request, data=permissions_matrix_payload())


@router.put("/update-password")
def update_password(
    payload: UpdatePasswordIn,
    request: Request,
    current_user: User = Depends(get_current_user),
    identity: IdentityService = Depends(get_identity_service),
):
    identity.change_password(current_user, payload.current_password, payload.new_password)
    log_business_event(logger, request, event="auth.password_changed", user_id=current_user.id)
    return success_response_payload(request, message="Password updated successfully")


@router.post("/forgot-password")
def forgot_password(
    payload: ForgotPasswordIn,
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
):
    identity.request_password_reset(payload.email)
    return success_response_payload(request, message=RESET_REQUESTED_MESSAGE)


@router.post("/verify-reset-otp")
def verify_reset_otp(
    payload: VerifyResetCodeIn,
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
):
    user = identity.check_reset_code(payload.email, payload.otp)
    return success_response_payload(request, message="Reset code verified", data={"email": user.email})


@router.post("/reset-password")
def reset_password(
    payload: ResetPasswordIn,
    request: Request,
    identity: IdentityService = Depends(get_identity_service),
):
    user = identity.reset_password(payload.email, payload.otp, payload.new_password)
    log_business_event(logger, request, event="auth.password_reset", user_id=user.id)
    return success_response_payload(
        request,
        message="Password reset successfully. You can now login with your new password.",
    )
