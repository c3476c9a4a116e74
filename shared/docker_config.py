"""
Docker Config Module

Credential records for container registries and the registry-credential
document consumed by docker, containerd, podman and kubelet:

    {
      "auths": {
        "myregistry.azurecr.io": {
          "auth": "MDAwMDAwMDAtMDAwMC0wMDAwLTAwMDAtMDAwMDAwMDAwMDAwOg==",
          "identitytoken": "<refresh token>"
        }
      }
    }

ACR refresh tokens are presented as "identitytoken". Once an identity token
is present the registry ignores the basic-auth pair, so "auth" is always the
fixed null-GUID username with an empty password.

Usage:
    entry = build_entry("myreg.azurecr.io", refresh_token, decode_token_payload)
    credentials = CredentialSet.from_entries([entry])
    document = credentials.to_json()
"""

import json
import base64
import logging
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from shared.errors import TokenDecodeError

logger = logging.getLogger(__name__)

# ACR expects this username whenever an identity token is used
SENTINEL_USERNAME = "00000000-0000-0000-0000-000000000000"
SENTINEL_AUTH = base64.b64encode(f"{SENTINEL_USERNAME}:".encode("utf-8")).decode("ascii")


@dataclass(frozen=True)
class CredentialEntry:
    """
    One registry's current credential.

    Attributes:
        server: Registry login server, unique within a CredentialSet
        auth: Base64 placeholder username/password pair
        refresh_token: Registry refresh token (the actual secret)
        valid_until: UTC expiry of the refresh token, None if unknown
    """
    server: str
    auth: str
    refresh_token: str
    valid_until: Optional[datetime] = None

    def to_auth_entry(self) -> Dict[str, str]:
        """Render this entry as a docker config "auths" value."""
        return {
            "auth": self.auth,
            "identitytoken": self.refresh_token,
        }

    def __repr__(self) -> str:
        # Keep the refresh token out of logs and tracebacks
        return (
            f"CredentialEntry(server={self.server!r}, "
            f"valid_until={self.valid_until!r})"
        )


def build_entry(
    server: str,
    raw_token: str,
    decode: Callable[[str], Any],
) -> CredentialEntry:
    """
    Build a credential entry from a freshly exchanged refresh token.

    The decoder must return an object with an ``expires_at`` datetime. A
    payload that cannot be decoded does not fail the entry: the token is
    still usable, only its expiry becomes unknown.

    Args:
        server: Registry login server
        raw_token: Refresh token returned by the registry
        decode: Payload decoder, raises TokenDecodeError on bad input

    Returns:
        CredentialEntry for the server
    """
    valid_until = None
    try:
        valid_until = decode(raw_token).expires_at
    except TokenDecodeError as e:
        logger.warning(f"Unknown token expiry for {server}: {e}")

    return CredentialEntry(
        server=server,
        auth=SENTINEL_AUTH,
        refresh_token=raw_token,
        valid_until=valid_until,
    )


class CredentialSet(Mapping[str, CredentialEntry]):
    """
    Read-only mapping of registry server to CredentialEntry.

    One set is the output of one refresh cycle. It is never modified after
    construction; the next cycle builds a new one.
    """

    def __init__(self, entries: Optional[Mapping[str, CredentialEntry]] = None):
        self._entries = MappingProxyType(dict(entries or {}))

    @classmethod
    def from_entries(cls, entries: Iterable[CredentialEntry]) -> "CredentialSet":
        """Build a set from entries; a later entry for a server wins."""
        return cls({entry.server: entry for entry in entries})

    def __getitem__(self, server: str) -> CredentialEntry:
        return self._entries[server]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"CredentialSet({sorted(self._entries)!r})"

    def min_valid_until(self) -> Optional[datetime]:
        """Earliest known expiry across the set, None if there is none."""
        expiries = [e.valid_until for e in self._entries.values() if e.valid_until is not None]
        return min(expiries) if expiries else None

    def unknown_expiry_servers(self) -> List[str]:
        """Servers whose token expiry could not be decoded."""
        return sorted(s for s, e in self._entries.items() if e.valid_until is None)

    def to_docker_config(self) -> Dict[str, Any]:
        """Render the set as a docker config dictionary."""
        return {
            "auths": {server: entry.to_auth_entry() for server, entry in self._entries.items()}
        }

    def to_json(self) -> str:
        """Render the set as a pretty-printed docker config document."""
        return json.dumps(self.to_docker_config(), indent=2)
