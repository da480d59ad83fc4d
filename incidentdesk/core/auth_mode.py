"""Authentication mode values accepted by the settings loader."""

from __future__ import annotations

from enum import Enum


class AuthMode(str, Enum):
    """How inbound bearer tokens are verified.

    ``clerk`` verifies session tokens with Clerk; ``local`` compares against a
    single shared token and maps it to a configured principal.
    """

    CLERK = "clerk"
    LOCAL = "local"
