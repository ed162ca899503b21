from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence, cast

import redis


@dataclass(frozen=True, slots=True)
class Mailbox:
    user_id: str
    namespace: str = "gamehub"

    @property
    def key(self) -> str:
        return f"mailbox:{self.namespace}:{self.user_id}"


def _encode(fields: Mapping[str, object]) -> dict[str, str]:
    # Streams only carry flat string fields; None becomes an empty string.
    return {str(k): "" if v is None else str(v) for k, v in fields.items()}


def publish_to_mailbox(*, r: redis.Redis, mailbox: Mailbox, fields: Mapping[str, object]) -> str:
    """Append an entry to a user's mailbox stream."""

    stream_id = r.xadd(mailbox.key, _encode(fields))
    return cast(str, stream_id)


def publish_many(*, r: redis.Redis, entries: Sequence[tuple[str, Mapping[str, object]]]) -> list[str]:
    ids: list[str] = []
    pipe = r.pipeline()
    for key, fields in entries:
        pipe.xadd(key, _encode(fields))
    for stream_id in pipe.execute():
        ids.append(cast(str, stream_id))
    return ids


def read_mailbox(*, r: redis.Redis, mailbox: Mailbox, count: int = 100) -> list[tuple[str, dict[str, str]]]:
    """Oldest-first entries of a mailbox, for consumers that poll instead of blocking."""

    entries = r.xrange(mailbox.key, count=count)
    return [(cast(str, sid), cast(dict[str, str], fields)) for sid, fields in entries]  # type: ignore[union-attr]
