# LLM Relay - OpenAI API compatible failover proxy for multiple LLM backends
# Copyright (C) 2025
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Shared-secret authentication for the relay API.
"""
import hmac
import logging
from typing import List, Mapping, Optional

logger = logging.getLogger(__name__)


class AuthService:
    """Checks request credentials against a single shared secret."""

    def __init__(self, secret: Optional[str] = None):
        self.secret = secret.strip() if secret and secret.strip() else None
        if self.secret:
            logger.info("Authentication enabled")
        else:
            logger.warning("AUTH_SECRET not set, running as an open proxy")

    @property
    def enabled(self) -> bool:
        return self.secret is not None

    @staticmethod
    def extract_keys(headers: Mapping[str, str]) -> List[str]:
        """Read the caller's keys from ``Authorization: Bearer`` and ``x-api-key``."""
        keys = []

        authorization = headers.get("authorization")
        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() == "bearer":
                authorization = credentials
            keys.append(authorization.strip())

        api_key = headers.get("x-api-key")
        if api_key:
            keys.append(api_key.strip())
        return keys

    def is_valid_key(self, api_key: Optional[str]) -> bool:
        """Check a key; always true when authentication is disabled."""
        if not self.enabled:
            return True
        if not api_key:
            return False
        return hmac.compare_digest(api_key.encode(), self.secret.encode())

    def is_authorized(self, headers: Mapping[str, str]) -> bool:
        """True when either header carries the secret."""
        if not self.enabled:
            return True
        return any(self.is_valid_key(key) for key in self.extract_keys(headers))
