"""SecretsProvider Port Interface.

Contract: Retrieve secret material (the API session token) by logical name; no persistence here.
"""

from __future__ import annotations

from typing import Protocol


class SecretsProvider(Protocol):
    def get(self, secret_name: str) -> str: ...

    """
    Retrieve a secret value using its logical name.
    The streaming client never reads ambient storage itself; owners resolve
    the session token through this port and pass it in.
    """
