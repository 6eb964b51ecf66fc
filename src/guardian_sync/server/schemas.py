# src/guardian_sync/server/schemas.py

from __future__ import annotations

from pydantic import BaseModel


class RegisterIn(BaseModel):
    name: str
    password: str
    role: str


class LoginIn(BaseModel):
    name: str
    password: str


class LinkIn(BaseModel):
    code: str


class TaskCreateIn(BaseModel):
    title: str
    description: str = ""
    date: str
    time: str
    dependentId: str
    # Client-assigned id makes replayed creates idempotent.
    id: str | None = None


class StatusUpdateIn(BaseModel):
    # Kept as plain str: the authority answers 400 with its own message for bad values.
    status: str
    lastUpdated: str | None = None
    force: bool = False
