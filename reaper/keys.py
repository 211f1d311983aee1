"""Session record keys shared with the proxy: ``{prefix}:{session_id}:{kind}``."""

from typing import NamedTuple

from reaper.errors import MalformedNotification

PORT = "port"
CID = "cid"
SHADOW = "shadow"
KINDS = frozenset({PORT, CID, SHADOW})


class SessionKey(NamedTuple):
    namespace: str
    session_id: str
    kind: str


def session_key(prefix: str, session_id: str, kind: str) -> str:
    return f"{prefix}:{session_id}:{kind}"


def _as_text(payload: str | bytes) -> str:
    if isinstance(payload, bytes):
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedNotification(repr(payload), "not utf-8") from e
    return payload


def parse_key(payload: str | bytes) -> SessionKey:
    """Split a key into namespace, session id and kind.

    Raises MalformedNotification unless the payload has exactly three
    non-empty ``:``-separated fields.
    """
    text = _as_text(payload)
    parts = text.split(":")
    if len(parts) != 3 or not all(parts):
        raise MalformedNotification(text, "expected namespace:session_id:kind")
    return SessionKey(*parts)


def shadow_session_id(payload: str | bytes, prefix: str) -> str | None:
    """Return the session id if payload is a shadow marker under prefix, else None.

    Keys outside the prefix namespace share the keyspace and are ignored.
    Inside the namespace a key that does not parse, or has an unknown
    kind, raises MalformedNotification.
    """
    text = _as_text(payload)
    if not text.startswith(f"{prefix}:"):
        return None
    key = parse_key(text)
    if key.kind not in KINDS:
        raise MalformedNotification(text, f"unknown kind {key.kind!r}")
    if key.kind != SHADOW:
        return None
    return key.session_id
