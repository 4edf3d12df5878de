from __future__ import annotations

import hmac
from collections.abc import Iterable

from fastapi import status
from fastapi.responses import JSONResponse

API_KEY_QUERY_PARAM = "api-key"


class ApiKeyAuthenticator:
    def __init__(self, api_keys: Iterable[str]):
        self._api_keys = frozenset(key for key in api_keys if key)
        self._encoded_keys = tuple(key.encode("utf-8") for key in self._api_keys)

    @property
    def api_keys(self) -> frozenset[str]:
        return self._api_keys

    def authenticate(self, presented_key: str | None) -> bool:
        if not presented_key:
            return False
        candidate = presented_key.encode("utf-8")
        matched = False
        # no early exit
        for key in self._encoded_keys:
            matched |= hmac.compare_digest(candidate, key)
        return matched


def unauthorized_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={
            "error": {
                "message": "Unauthorized",
                "type": "authentication_error",
                "param": API_KEY_QUERY_PARAM,
                "code": "invalid_api_key",
            },
        },
    )
