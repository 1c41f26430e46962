"""Caller identity: authenticated users versus anonymous visitors."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

ANONYMOUS_PREFIX = "anonymous_"
_VISITOR_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


@dataclass(frozen=True)
class AuthenticatedCaller:
    user_id: str
    email: Optional[str] = None

    @property
    def owner_id(self) -> str:
        return self.user_id

    @property
    def is_anonymous(self) -> bool:
        return False


@dataclass(frozen=True)
class AnonymousCaller:
    visitor_id: str

    @property
    def owner_id(self) -> str:
        return f"{ANONYMOUS_PREFIX}{self.visitor_id}"

    @property
    def is_anonymous(self) -> bool:
        return True


Caller = Union[AuthenticatedCaller, AnonymousCaller]


def normalize_visitor_id(value: Optional[str]) -> str:
    """Return a usable visitor id, or an empty string when unusable."""
    text = str(value or "").strip()
    if not text or not _VISITOR_ID_RE.match(text):
        return ""
    return text


def is_anonymous_owner(owner_id: Optional[str]) -> bool:
    return str(owner_id or "").startswith(ANONYMOUS_PREFIX)


def parse_owner_id(owner_id: str) -> Caller:
    """Map a stored song owner id back to the tagged identity."""
    if is_anonymous_owner(owner_id):
        return AnonymousCaller(visitor_id=owner_id[len(ANONYMOUS_PREFIX):])
    return AuthenticatedCaller(user_id=owner_id)


def resolve_caller(user_id: Optional[str], email: Optional[str], visitor_id: Optional[str]) -> Optional[Caller]:
    """Prefer the session identity; fall back to the visitor fingerprint."""
    if user_id:
        return AuthenticatedCaller(user_id=user_id, email=email)
    normalized = normalize_visitor_id(visitor_id)
    if normalized:
        return AnonymousCaller(visitor_id=normalized)
    return None
