"""
Authentication strategies and their coordinator.

Design goals:
- Provider-agnostic (local passwords, passkeys, any OAuth2 provider with PKCE).
- Secrets stay out of this package: token exchange and signature checks are delegated.
- One session per instance, written only by the coordinator.
"""
