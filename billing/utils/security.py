from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from billing.config import settings


_basic_scheme = HTTPBasic()


def require_basic_auth(credentials: HTTPBasicCredentials = Depends(_basic_scheme)) -> None:
    """Guard for the API docs; webhooks authenticate by gateway signature instead."""

    username_valid = secrets.compare_digest(credentials.username or "", settings.api_basic_username)
    password_valid = secrets.compare_digest(credentials.password or "", settings.api_basic_password)
    if not (username_valid and password_valid):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
