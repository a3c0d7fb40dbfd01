"""
Authentication package for the Refresh Gate.

This package contains the token refresh cache gate and the token stores it
persists access tokens to.
"""
