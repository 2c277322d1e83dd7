"""
gatehouse: OAuth2/OpenID Connect authorization server and federated login broker.
"""
