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
Entry point for the LLM Relay application.
"""
import uvicorn
from .config import settings


def run(reload: bool = False) -> None:
    """Serve the relay with uvicorn on the configured host and port."""
    uvicorn.run(
        "llm_relay.app:app",
        host=settings.host,
        port=settings.port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    run()
