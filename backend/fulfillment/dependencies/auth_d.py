from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.security import decode_access_token, parse_subject_identity

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict:
    if credentials is None:
        raise _unauthorized("Missing bearer token")

    try:
        return decode_access_token(credentials.credentials)
    except ValueError as exc:
        raise _unauthorized("Invalid or expired token") from exc


def get_cart_owner_id(current_user: dict = Depends(get_current_user)) -> str:
    """The token subject owns the cart, its reservations and its payment claims."""
    try:
        return parse_subject_identity(current_user.get("sub"))
    except ValueError as exc:
        raise _unauthorized("Invalid token subject") from exc


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    if not current_user.get("is_admin", False):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator permissions required",
        )

    return current_user


def get_operator_id(current_user: dict = Depends(require_admin)) -> str:
    try:
        return parse_subject_identity(current_user.get("sub"))
    except ValueError as exc:
        raise _unauthorized("Invalid token subject") from exc
