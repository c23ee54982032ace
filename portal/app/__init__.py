"""
OIDC Portal
===========

Server-rendered web application whose users sign in through an external
OpenID Connect authority. Successful logins are linked to local accounts in
the identity store, which then owns the session.

Packages:
    - auth: scheme registry, OIDC client, login gateway and identity endpoints
    - identity: identity store, sign-in manager and session tokens
"""
