from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, Request, status

from mirrord.daemon import MirrorDaemon


def get_daemon(request: Request) -> MirrorDaemon:
    return request.app.state.daemon


def require_admin(
    authorization: str | None = Header(default=None),
    daemon: MirrorDaemon = Depends(get_daemon),
) -> None:
    expected = daemon.admin_token
    if expected is None:
        return
    scheme, _, supplied = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(supplied.strip(), expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
