# core/authentication.py
"""
Operator credentials: verification, password changes and the seed account

The authenticated user id is the caller identity the idempotency layer
namespaces keys with.
"""

import base64
import binascii
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from core.database_models import User

logger = logging.getLogger(__name__)

# Verified against when the username is unknown, so both paths pay for one hash check
_FALLBACK_PASSWORD_HASH = generate_password_hash('fallback-password-for-unknown-users')


class AuthError(Exception):
    """Base exception for authentication"""
    pass


class InvalidCredentialsError(AuthError):
    """Unknown username, wrong password or malformed credentials"""

    def __init__(self, username: Optional[str], reason: str):
        self.username = username
        self.reason = reason
        super().__init__(reason)


class AuthBackendError(AuthError):
    """Credentials could not be checked because the store failed"""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Failed to retrieve stored credentials: {cause}")


@dataclass
class Credentials:
    username: str
    password: str = field(repr=False)


def compute_password_hash(password: str) -> str:
    return generate_password_hash(password)


def basic_auth_credentials(header_value: Optional[str]) -> Credentials:
    """
    Decode an ``Authorization: Basic ...`` header value

    Raises:
        InvalidCredentialsError: header missing or not well-formed Basic credentials
    """
    if not header_value:
        raise InvalidCredentialsError(None, "The 'Authorization' header was missing")
    if not header_value.startswith('Basic '):
        raise InvalidCredentialsError(None, "The authorization scheme was not 'Basic'")
    try:
        decoded = base64.b64decode(header_value[len('Basic '):], validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError) as e:
        raise InvalidCredentialsError(None, "Failed to decode 'Basic' credentials") from e

    username, sep, password = decoded.partition(':')
    if not sep:
        raise InvalidCredentialsError(username, "A password must be provided in 'Basic' auth")
    return Credentials(username=username, password=password)


def validate_credentials(session: Session, credentials: Credentials) -> uuid.UUID:
    """
    Return the user id for valid credentials

    Raises:
        InvalidCredentialsError: unknown user or wrong password
        AuthBackendError: the user store could not be queried
    """
    try:
        user = session.execute(
            select(User).where(User.username == credentials.username)
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Failed to retrieve credentials for {credentials.username}: {e}", exc_info=True)
        raise AuthBackendError(e) from e

    expected_hash = user.password_hash if user is not None else _FALLBACK_PASSWORD_HASH
    password_ok = check_password_hash(expected_hash, credentials.password)

    if user is None:
        raise InvalidCredentialsError(credentials.username, 'Unknown username')
    if not password_ok:
        raise InvalidCredentialsError(credentials.username, 'Invalid password')
    return user.user_id


def get_username(session: Session, user_id: uuid.UUID) -> str:
    user = session.get(User, user_id)
    if user is None:
        raise InvalidCredentialsError(None, f'Unknown user id {user_id}')
    return user.username


def change_password(session: Session, user_id: uuid.UUID, new_password: str) -> None:
    """Replace the stored hash. Does not commit."""
    user = session.get(User, user_id)
    if user is None:
        raise InvalidCredentialsError(None, f'Unknown user id {user_id}')
    user.password_hash = compute_password_hash(new_password)
    session.flush()
    logger.info(f"Password changed for user {user_id}")


def create_user(session: Session, username: str, password: str) -> uuid.UUID:
    user = User(user_id=uuid.uuid4(), username=username, password_hash=compute_password_hash(password))
    session.add(user)
    session.flush()
    return user.user_id


def ensure_user(session: Session, username: str, password: str) -> uuid.UUID:
    """Create the account if missing; an existing account keeps its password"""
    user = session.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user is not None:
        return user.user_id
    logger.info(f"Creating operator account '{username}'")
    return create_user(session, username, password)
