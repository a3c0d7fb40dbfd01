"""
Core interfaces for the Refresh Gate.

The gate never discovers its collaborators; a token store and a token
endpoint client implementing these interfaces are passed in at construction.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .models import StoredEntry, TokenEndpointResponse, TEXT_PLAIN


class ITokenStore(ABC):
    """Interface for the key-value store holding access tokens."""

    @abstractmethod
    def get(self, key: str) -> Optional[StoredEntry]:
        """Get the entry stored under a key, or None if absent."""
        pass

    @abstractmethod
    def put(
        self,
        key: str,
        value: str,
        media_type: str = TEXT_PLAIN,
        metadata: Optional[Dict[str, str]] = None
    ) -> None:
        """Create or replace the entry stored under a key."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove the entry under a key. Returns True if one was removed."""
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        """List keys currently held by the store."""
        pass


class ITokenEndpointClient(ABC):
    """Interface for the HTTP client that talks to the token endpoint."""

    @abstractmethod
    async def post_form(self, url: str, body: str) -> TokenEndpointResponse:
        """POST a form-encoded body and return the raw response."""
        pass
