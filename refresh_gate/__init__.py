"""
Refresh Gate: OAuth2 refresh-token cache gate for HTTP-calling clients.

Reuses an access token saved in a key-value store when one is present and
otherwise performs a refresh call against the token endpoint and saves the
result.
"""

__version__ = "1.0.0"
