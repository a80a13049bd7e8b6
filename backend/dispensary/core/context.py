"""Caller identity. Authentication happens upstream; these ids are opaque here."""
from dataclasses import dataclass


@dataclass(frozen=True)
class Actor:
    tenant_id: str
    user_id: str
