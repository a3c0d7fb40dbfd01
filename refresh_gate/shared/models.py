"""
Core data models for the Refresh Gate.

This module defines the data structures passed between the gate, its token
store and its token endpoint client.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict

TOKEN_ENDPOINT_PATH = "/services/oauth2/token"
TIMESTAMP_METADATA_KEY = "timestamp"
TEXT_PLAIN = "text/plain"


@dataclass(frozen=True)
class RefreshParameters:
    """Inputs of a single refresh call."""
    host: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    custom_url: Optional[str] = None
    token_endpoint_url: Optional[str] = None

    def resolve_token_endpoint(self) -> Optional[str]:
        """Explicit endpoint URL, else ``{host}/services/oauth2/token``."""
        if self.token_endpoint_url:
            return self.token_endpoint_url
        if self.host:
            return self.host.rstrip('/') + TOKEN_ENDPOINT_PATH
        return None


@dataclass
class TokenRecord:
    """An access token as returned to callers of the gate."""
    token: str
    timestamp: Optional[str] = None
    api_base_url: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.token:
            raise ValueError("Access token cannot be empty")

    def __repr__(self) -> str:
        return (
            f"TokenRecord(token='***', timestamp={self.timestamp!r}, "
            f"api_base_url={self.api_base_url!r}, expires_at={self.expires_at!r})"
        )


@dataclass
class StoredEntry:
    """A value held by a token store together with its metadata."""
    value: str
    media_type: str = TEXT_PLAIN
    metadata: Dict[str, str] = field(default_factory=dict)
    stored_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, object]:
        return {
            'value': self.value,
            'media_type': self.media_type,
            'metadata': dict(self.metadata),
            'stored_at': self.stored_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'StoredEntry':
        stored_at = data.get('stored_at')
        return cls(
            value=data['value'],
            media_type=data.get('media_type') or TEXT_PLAIN,
            metadata=dict(data.get('metadata') or {}),
            stored_at=datetime.fromisoformat(stored_at) if stored_at else datetime.now(),
        )


@dataclass
class TokenEndpointResponse:
    """Raw answer of the token endpoint."""
    status: int
    reason: Optional[str]
    body: str = ""

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status <= 499

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500
