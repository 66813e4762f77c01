# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Idempotency store: exactly-once effects for retried requests.

Every mutating request carries a client-chosen key. The first request for a
``(user_id, key)`` pair inserts a pending record inside a fresh transaction
and keeps that transaction open while the business writes happen; the saved
response is written into the same transaction before it commits. Later
requests with the same pair conflict on the primary key, wait for the first
transaction to finish, and replay the stored response byte for byte.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Callable, List, NamedTuple, Optional, Union

from .logger import get_logger
from .persistence import Persistence, utc_now_epoch
from .sql import DbTransaction

MAX_KEY_LENGTH = 50


class InvalidIdempotencyKey(ValueError):
    """Raised when a client supplies an empty or oversized key."""


class IncompleteIdempotencyRecord(RuntimeError):
    """A record exists for the key but no response was ever saved."""


@dataclass(frozen=True)
class IdempotencyKey:
    value: str

    @classmethod
    def parse(cls, raw: Optional[str]) -> IdempotencyKey:
        if not raw:
            raise InvalidIdempotencyKey("The idempotency key cannot be empty")
        if len(raw) >= MAX_KEY_LENGTH:
            raise InvalidIdempotencyKey(
                f"The idempotency key must be shorter than {MAX_KEY_LENGTH} characters"
            )
        return cls(raw)

    def __str__(self) -> str:
        return self.value


class HeaderPair(NamedTuple):
    name: str
    value: bytes


@dataclass
class SavedResponse:
    """An HTTP response as stored for replay.

    Headers keep their order and duplicates (several ``set-cookie`` entries
    are common).
    """

    status_code: int
    headers: List[HeaderPair] = field(default_factory=list)
    body: bytes = b""

    def header_values(self, name: str) -> List[bytes]:
        """Return every value for ``name``, compared case-insensitively."""
        wanted = name.lower()
        return [value for key, value in self.headers if key.lower() == wanted]


@dataclass
class Proceed:
    """First request for the key: perform the work inside ``transaction``."""

    transaction: DbTransaction


@dataclass
class Replay:
    """The key was already used: return ``response`` unchanged."""

    response: SavedResponse


NextAction = Union[Proceed, Replay]


def encode_headers(headers: List[HeaderPair]) -> str:
    return json.dumps(
        [[name, base64.b64encode(value).decode("ascii")] for name, value in headers]
    )


def decode_headers(raw: Optional[str]) -> List[HeaderPair]:
    if not raw:
        return []
    return [HeaderPair(name, base64.b64decode(value)) for name, value in json.loads(raw)]


class IdempotencyStore:
    """Persist and replay responses keyed by ``(user_id, idempotency_key)``."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        clock: Optional[Callable[[], int]] = None,
        logger=None,
    ):
        self.persistence = persistence
        self._clock = clock or utc_now_epoch
        self.logger = logger or get_logger()

    async def begin(self, key: IdempotencyKey, user_id: str) -> NextAction:
        """Claim the key or return the response saved by an earlier request.

        On :class:`Proceed` the caller owns the returned transaction and must
        either pass it to :meth:`complete` or roll it back.

        Raises:
            IncompleteIdempotencyRecord: The key is known but has no saved
                response.
        """
        # A conflicting record can disappear between the insert and the read
        # when it is pruned; one more insert attempt settles it.
        for _ in range(2):
            txn = self.persistence.begin()
            try:
                inserted = await self.persistence.insert_idempotency_key(
                    txn, user_id, key.value, self._clock()
                )
            except BaseException:
                await txn.rollback()
                raise
            if inserted:
                return Proceed(txn)
            await txn.rollback()
            saved = await self.get_saved_response(key, user_id)
            if saved is not None:
                self.logger.debug("Replaying saved response for key %s (user %s)", key, user_id)
                return Replay(saved)
        raise IncompleteIdempotencyRecord(
            f"Idempotency record for key '{key}' (user {user_id}) vanished during lookup"
        )

    async def complete(
        self,
        txn: DbTransaction,
        key: IdempotencyKey,
        user_id: str,
        response: SavedResponse,
    ) -> SavedResponse:
        """Save ``response`` in ``txn`` and commit everything written there."""
        try:
            await self.persistence.save_response(
                txn,
                user_id,
                key.value,
                status_code=response.status_code,
                headers=encode_headers(response.headers),
                body=bytes(response.body),
            )
            await txn.commit()
        except BaseException:
            await txn.rollback()
            raise
        return response

    async def get_saved_response(
        self, key: IdempotencyKey, user_id: str
    ) -> Optional[SavedResponse]:
        """Return the saved response, or ``None`` when no record exists.

        Raises:
            IncompleteIdempotencyRecord: The record exists without a response.
        """
        record = await self.persistence.fetch_idempotency_record(user_id, key.value)
        if record is None:
            return None
        status = record.get("response_status_code")
        if status is None:
            raise IncompleteIdempotencyRecord(
                f"Idempotency record for key '{key}' (user {user_id}) has no saved response"
            )
        body = record.get("response_body")
        return SavedResponse(
            status_code=int(status),
            headers=decode_headers(record.get("response_headers")),
            body=bytes(body) if body is not None else b"",
        )

    async def release_pending(self, key: IdempotencyKey, user_id: str) -> bool:
        """Delete a record that is still pending so the key can be reused.

        Completed records are never touched. Returns ``True`` when a record
        was removed.
        """
        removed = await self.persistence.delete_pending_idempotency_key(user_id, key.value)
        if removed:
            self.logger.warning("Released pending idempotency key %s (user %s)", key, user_id)
        return removed > 0
