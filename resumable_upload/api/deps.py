"""
Request dependencies: the upload manager from app state and the caller identity.
"""
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from ..models import UploadSession
from ..services import UploadSessionManager

OWNER_KEY = "owner_id"


class HeaderIdentityProvider:
    """
    Resolves an opaque user id from `Authorization: Bearer <token>` or `X-User-Id`.

    Token validation belongs to whatever sits in front of the API; the token
    itself is used as the identifier.
    """

    def __init__(self, required: bool = False, anonymous_user: str = "anonymous"):
        self.required = required
        self.anonymous_user = anonymous_user

    def __call__(
        self,
        authorization: Annotated[Optional[str], Header()] = None,
        x_user_id: Annotated[Optional[str], Header()] = None,
    ) -> str:
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
            if token:
                return token
        if x_user_id:
            return x_user_id
        if self.required:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing credentials")
        return self.anonymous_user


get_current_user_id = HeaderIdentityProvider()


def get_manager(request: Request) -> UploadSessionManager:
    return request.app.state.manager


def get_owned_session(
    session_id: str,
    manager: Annotated[UploadSessionManager, Depends(get_manager)],
    user_id: Annotated[str, Depends(get_current_user_id)],
) -> UploadSession:
    """Load a session and hide it from anyone but its owner"""
    session = manager.get_session(session_id)
    owner = session.metadata.get(OWNER_KEY)
    if owner is not None and owner != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload session not found")
    return session
