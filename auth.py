import logging
from typing import Optional

from fastapi import HTTPException

from database import Database
from models import Session

logger = logging.getLogger(__name__)

SIGNIN_PATH = "/auth/signin"
DASHBOARDS = {
    "club_leader": "/dashboard/leader",
    "student": "/dashboard/student",
}


def sign_up(db: Database, name: str, email: str, password: str, role: str) -> Session:
    """Create a user and sign them in."""
    user = db.create_user(email=email, password=password, name=name, role=role)
    session = Session.for_user(user)
    db.set_session(session)
    logger.info(f"User {email} signed up as {role}")
    return session


def sign_in(db: Database, email: str, password: str) -> Session:
    """Start a session for the user with matching credentials."""
    user = db.get_user_by_email(email)
    # plain-text comparison, passwords are not hashed in this store
    if user is None or user.password != password:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    session = Session.for_user(user)
    db.set_session(session)
    logger.info(f"User {email} signed in")
    return session


def sign_out(db: Database) -> Optional[Session]:
    """End the current session, returning it if there was one."""
    session = db.get_session()
    db.clear_session()
    if session:
        logger.info(f"User {session.email} signed out")
    return session


def require_roles(db: Database, *roles: str):
    """Build a route guard that reads the stored session.

    Signed-out visitors get a 401 pointing at the sign-in page; visitors whose
    role is not allowed get a 403 pointing at their own dashboard. This is a
    navigation aid only, the store itself performs no access control.
    """
    def guard() -> Session:
        session = db.get_session()
        if session is None:
            raise HTTPException(
                status_code=401,
                detail="Not signed in",
                headers={"Location": SIGNIN_PATH},
            )
        if roles and session.role not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"This page is only available to {' or '.join(roles)} accounts",
                headers={"Location": DASHBOARDS.get(session.role, SIGNIN_PATH)},
            )
        return session
    return guard
