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
Error types raised by the relay.
"""
from typing import List, Optional


class RelayError(Exception):
    """Base class for relay errors."""


class InvalidRequestBody(RelayError):
    """The request body could not be parsed as JSON."""


class BackendError(RelayError):
    """A single backend failed to produce a response."""

    def __init__(self, backend: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"[{backend}] {message}")
        self.backend = backend
        self.status_code = status_code


class AllBackendsFailed(RelayError):
    """Every configured backend was tried and none produced output."""

    def __init__(self, attempted: List[str]):
        if attempted:
            message = f"All backends failed: {', '.join(attempted)}"
        else:
            message = "No backends are configured"
        super().__init__(message)
        self.attempted = list(attempted)
