from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated identity extracted from a validated JWT.

    Carried through the request via FastAPI's dependency system.  The
    analytics engine treats ``user_id`` as an opaque key: it never looks
    the user up, it only partitions events and engagement by it.
    """

    user_id: str
    roles: frozenset[str]
