"""
Federated login through external OIDC and OAuth2 identity providers.
"""
