"""
Authentication coordination core.

One dispatch surface over local password checks, WebAuthn ceremonies and OAuth2
(authorization code + PKCE), with per-method throttling and a single local session.
"""
