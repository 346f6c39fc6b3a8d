"""Request dependencies: app-state accessors and API key authentication."""

from __future__ import annotations

import hmac
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from classifyx.config import Settings
    from classifyx.ml.inference import InferencePool
    from classifyx.ml.model_manager import TFLiteModelManager

# Clients may send the key either as a bearer token or in a dedicated header.
_bearer_token = HTTPBearer(auto_error=False, description="API key as a bearer token")
_key_header = APIKeyHeader(name="X-API-Key", auto_error=False, description="API key header")


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_model_manager(request: Request) -> TFLiteModelManager:
    manager: TFLiteModelManager = request.app.state.model_manager
    return manager


def _presented_keys(bearer: HTTPAuthorizationCredentials | None, header_key: str | None) -> list[str]:
    keys = [header_key] if header_key else []
    if bearer is not None:
        keys.append(bearer.credentials)
    return keys


def key_matches(presented: str, expected: str) -> bool:
    """Constant-time comparison of a presented key against the configured one."""
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def verify_api_key(
    request: Request,
    bearer: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_token)],
    header_key: Annotated[str | None, Depends(_key_header)],
) -> None:
    """Reject the request unless it carries CLASSIFYX_API_KEY, when one is configured."""
    expected = get_settings(request).api_key
    if not expected:
        return

    presented = _presented_keys(bearer, header_key)
    if any(key_matches(key, expected) for key in presented):
        return

    detail = "Invalid API key" if presented else "Missing API key"
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": 'Bearer realm="classifyx"'},
    )
