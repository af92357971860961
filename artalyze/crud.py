from sqlmodel import Session, select
from passlib.context import CryptContext
from typing import Optional
import hashlib
import hmac
import os

from . import models, player_state

# secret for signing identity tokens; override with SESSION_SECRET env var in production
_SECRET = os.environ.get('SESSION_SECRET', 'dev-secret-change-me')
_ADMIN_SUBJECT = 'admin'

pwd = CryptContext(schemes=["bcrypt"], deprecated="auto")
engine = None


def _sign(value: str) -> str:
    return hmac.new(_SECRET.encode(), value.encode(), hashlib.sha256).hexdigest()


def sign_user_token(db_session: Session, uid: int) -> Optional[str]:
    """Sign an account id into "uid.sig"; None if the account doesn't exist."""
    if uid is None or db_session.get(models.Account, uid) is None:
        return None
    val = str(uid)
    return f"{val}.{_sign(val)}"


def verify_user_token(db_session: Session, token: str) -> Optional[int]:
    try:
        uid_s, sig = token.rsplit('.', 1)
    except (AttributeError, ValueError):
        return None
    if not hmac.compare_digest(_sign(uid_s), sig):
        return None
    try:
        uid = int(uid_s)
    except ValueError:
        return None
    if db_session.get(models.Account, uid) is None:
        return None
    return uid


def sign_admin_token() -> str:
    return f"{_ADMIN_SUBJECT}.{_sign(_ADMIN_SUBJECT)}"


def verify_admin_token(token: str) -> bool:
    try:
        subject, sig = token.rsplit('.', 1)
    except (AttributeError, ValueError):
        return False
    return subject == _ADMIN_SUBJECT and hmac.compare_digest(_sign(subject), sig)


def check_admin_credentials(email: str, password: str) -> bool:
    admin_email = os.getenv('ADMIN_EMAIL')
    admin_password = os.getenv('ADMIN_PASSWORD')
    if not admin_email or not admin_password:
        return False
    return hmac.compare_digest(email, admin_email) and hmac.compare_digest(password, admin_password)


def get_account_by_email(session: Session, email: str):
    return session.exec(select(models.Account).where(models.Account.email == email.lower())).first()


def create_account(session: Session, email: str, password: str,
                   first_name: Optional[str] = None, last_name: Optional[str] = None):
    """Register an account together with its zeroed player session.

    Returns None when the email is already taken.
    """
    if get_account_by_email(session, email):
        return None
    acct = models.Account(
        email=email.lower(),
        password_hash=pwd.hash(password),
        first_name=first_name,
        last_name=last_name,
    )
    session.add(acct)
    session.commit()
    session.refresh(acct)
    assert acct.id is not None
    player_state.ensure_session(session, acct.id)
    return acct


def authenticate(session: Session, email: str, password: str):
    acct = get_account_by_email(session, email)
    if not acct or not pwd.verify(password, acct.password_hash):
        return None
    return acct


def set_theme_preference(session: Session, uid: int, theme: str):
    acct = session.get(models.Account, uid)
    if not acct:
        return None
    acct.theme_preference = theme
    session.add(acct)
    session.commit()
    session.refresh(acct)
    return acct


def delete_account(session: Session, uid: int) -> bool:
    acct = session.get(models.Account, uid)
    if not acct:
        return False
    player_state.delete_session(session, uid)
    session.delete(acct)
    session.commit()
    return True
