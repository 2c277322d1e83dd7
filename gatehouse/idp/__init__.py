"""
Identity Provider (IDP) module for OAuth2/OpenID Connect functionality.

This module provides the authorization server: client authentication,
authorization codes with PKCE, opaque and signed access tokens, refresh
tokens, introspection, revocation and discovery.
"""
