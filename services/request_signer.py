"""HMAC request signing for the DEX aggregator API."""
from __future__ import annotations

import base64
import hashlib
import hmac
import time

from constants import (
    HEADER_ACCESS_KEY,
    HEADER_ACCESS_PASSPHRASE,
    HEADER_ACCESS_PROJECT,
    HEADER_ACCESS_SIGN,
    HEADER_ACCESS_TIMESTAMP,
)
from services.errors import ConfigError


class RequestSigner:
    """Builds the authentication header set for one aggregator request.

    Credentials are checked once, when the signer is built at startup; a missing
    value raises ``ConfigError`` instead of failing on the first request.
    """

    def __init__(self, api_key: str, secret_key: str, passphrase: str, project_id: str) -> None:
        missing = [
            name
            for name, value in (
                ("api_key", api_key),
                ("secret_key", secret_key),
                ("passphrase", passphrase),
                ("project_id", project_id),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Aggregator credentials incomplete, missing: {', '.join(missing)}")
        self._api_key = api_key
        self._secret_key = secret_key
        self._passphrase = passphrase
        self._project_id = project_id

    @staticmethod
    def timestamp() -> str:
        """Wall-clock milliseconds since epoch; generate a fresh one per request."""
        return str(int(time.time() * 1000))

    def signature(self, timestamp: str, method: str, full_path: str, body: str = "") -> str:
        prehash = f"{timestamp}{method.upper()}{full_path}{body}"
        digest = hmac.new(self._secret_key.encode(), prehash.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def sign(self, timestamp: str, method: str, full_path: str, body: str = "") -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            HEADER_ACCESS_KEY: self._api_key,
            HEADER_ACCESS_SIGN: self.signature(timestamp, method, full_path, body),
            HEADER_ACCESS_TIMESTAMP: timestamp,
            HEADER_ACCESS_PASSPHRASE: self._passphrase,
            HEADER_ACCESS_PROJECT: self._project_id,
        }
