"""
Unit tests for bearer token verification and scope checks.
"""
from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.security import SecurityScopes

from backend.app.core.security import (
    PLAYLIST_READ,
    PLAYLIST_WRITE,
    Role,
    create_access_token,
    get_current_user,
)


@pytest.mark.asyncio
async def test_owner_token_grants_write():
    token = create_access_token({"sub": "user-1"})
    user = await get_current_user(SecurityScopes(scopes=[PLAYLIST_WRITE]), token)
    assert user.user_id == "user-1"
    assert user.role == Role.OWNER


@pytest.mark.asyncio
async def test_viewer_cannot_write():
    token = create_access_token({"sub": "user-1", "role": Role.VIEWER})

    assert (await get_current_user(SecurityScopes(scopes=[PLAYLIST_READ]), token)).role == Role.VIEWER
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(SecurityScopes(scopes=[PLAYLIST_WRITE]), token)
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_expired_or_garbage_tokens_are_rejected():
    expired = create_access_token({"sub": "user-1"}, expires_delta=timedelta(minutes=-5))
    for token in (expired, "not-a-jwt"):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(SecurityScopes(scopes=[]), token)
        assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_token_without_subject_is_rejected():
    token = create_access_token({"role": Role.OWNER})
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(SecurityScopes(scopes=[]), token)
    assert exc_info.value.status_code == 401
