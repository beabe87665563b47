import logging

from fastapi import APIRouter, Depends, Request

from campus.api.deps import get_identity_service
from campus.core.api_response import success_response_payload
from campus.core.observability import log_business_event
from campus.core.security import get_current_user
from campus.core.visibility import private_user_payload
from campus.db.models.user import User
from campus.schemas.auth import ProfileUpdateIn
from campus.services.identity import IdentityService

router = APIRouter(prefix="/profile", tags=["profile"])
logger = logging.getLogger(__name__)


@router.get("")
def get_profile(request: Request, current_user: User = Depends(get_current_user)):
    return success_response_payload(request, data=private_user_payload(current_user))


@router.put("")
def update_profile(
    payload: ProfileUpdateIn,
    request: Request,
    current_user: User = Depends(get_current_user),
    identity: IdentityService = Depends(get_identity_service),
):
    user = identity.update_profile(current_user, payload)
    log_business_event(
        logger,
        request,
        event="profile.update",
        fields=",".join(sorted(payload.model_dump(exclude_unset=True))) or "-",
    )
    return success_response_payload(request, message="Profile updated successfully", data=private_user_payload(user))
