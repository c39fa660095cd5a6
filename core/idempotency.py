# core/idempotency.py
"""
Idempotency keys and the fingerprint store

A client attaches an idempotency key to a mutating request. The first
response committed for a (caller, key) pair is stored verbatim and becomes
the authoritative reply for every retry carrying the same key: the request
body is not part of the fingerprint, identical keys are trusted to mean the
identical logical operation.

Records never expire.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from flask import Response
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.database_models import IdempotencyRecord

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 50
KEY_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


class IdempotencyError(Exception):
    """Base exception for the idempotency layer"""
    pass


class InvalidIdempotencyKeyError(IdempotencyError):
    """The client supplied a malformed key"""

    def __init__(self, key, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(reason)


class IdempotencyConflictError(IdempotencyError):
    """A record already exists for (caller, key): another request committed first"""

    def __init__(self, caller_id: uuid.UUID, key: 'IdempotencyKey'):
        self.caller_id = caller_id
        self.key = key
        super().__init__(f"Idempotency key {key} already used by caller {caller_id}")


@dataclass(frozen=True)
class IdempotencyKey:
    value: str

    @classmethod
    def parse(cls, raw) -> 'IdempotencyKey':
        if raw is None or not isinstance(raw, str) or raw == '':
            raise InvalidIdempotencyKeyError(raw, 'The idempotency key cannot be empty')
        if len(raw) > MAX_KEY_LENGTH:
            raise InvalidIdempotencyKeyError(
                raw, f'The idempotency key must be shorter than {MAX_KEY_LENGTH + 1} characters'
            )
        if not KEY_PATTERN.match(raw):
            raise InvalidIdempotencyKeyError(
                raw, 'The idempotency key may only contain letters, digits, "-" and "_"'
            )
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CachedResponse:
    """HTTP response captured byte for byte"""
    status_code: int
    headers: Tuple[Tuple[str, str], ...]
    body: bytes

    @classmethod
    def from_response(cls, response: Response) -> 'CachedResponse':
        return cls(
            status_code=response.status_code,
            headers=tuple((name, value) for name, value in response.headers.items()),
            body=response.get_data(),
        )

    def to_response(self) -> Response:
        return Response(self.body, status=self.status_code, headers=list(self.headers))


class FingerprintStore:
    """
    Persists the first committed response per (caller, idempotency key)

    Both operations run on the caller's session so that ``save`` lands in the
    same transaction as the work it describes.
    """

    def lookup(self, session: Session, caller_id: uuid.UUID,
               key: IdempotencyKey) -> Optional[CachedResponse]:
        record = session.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.user_id == caller_id,
                IdempotencyRecord.idempotency_key == key.value,
            )
        ).scalar_one_or_none()
        if record is None:
            return None
        return CachedResponse(
            status_code=record.response_status_code,
            headers=tuple((name, value) for name, value in record.response_headers),
            body=bytes(record.response_body),
        )

    def save(self, session: Session, caller_id: uuid.UUID,
             key: IdempotencyKey, response: CachedResponse) -> None:
        """
        Stage the record in the current transaction

        Raises:
            IdempotencyConflictError: a record for (caller, key) exists. The
                session has been rolled back; the caller should replay the
                stored response.
        """
        session.add(IdempotencyRecord(
            user_id=caller_id,
            idempotency_key=key.value,
            response_status_code=response.status_code,
            response_headers=[[name, value] for name, value in response.headers],
            response_body=response.body,
        ))
        try:
            session.flush()
        except IntegrityError as e:
            session.rollback()
            logger.info(f"Idempotency key {key} for caller {caller_id} was committed concurrently")
            raise IdempotencyConflictError(caller_id, key) from e


fingerprint_store = FingerprintStore()
