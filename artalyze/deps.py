from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlmodel import Session

from . import crud


def get_session():
    # simple dependency that yields a session
    with Session(crud.engine) as session:
        yield session


def _bearer(request: Request) -> Optional[str]:
    auth = request.headers.get('authorization')
    if auth and auth.lower().startswith('bearer '):
        return auth.split(' ', 1)[1].strip()
    return None


def optional_user_id(request: Request, session: Session = Depends(get_session)) -> Optional[int]:
    """Resolve the caller from a Bearer token or the player_token cookie."""
    token = _bearer(request) or request.cookies.get('player_token')
    if not token:
        return None
    return crud.verify_user_token(session, token)


def current_user_id(user_id: Optional[int] = Depends(optional_user_id)) -> int:
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized access")
    return user_id


def require_admin(request: Request) -> None:
    token = _bearer(request) or request.cookies.get('admin_token')
    if not token:
        raise HTTPException(status_code=401, detail="No token provided")
    if not crud.verify_admin_token(token):
        raise HTTPException(status_code=403, detail="Access denied. Admins only.")
