"""
Authentication Package

External login through an OpenID Connect authority.

Modules:
- schemes: Named authentication schemes and the default sign-in/challenge choice
- oidc_client: Discovery, code exchange, ID token validation and user-info
- claims: Mapping of authority claims onto the local principal
- gateway: Login attempt state machine; turns remote failures into redirects
- routes: /Account/* endpoints and the /signin-oidc callback
- dependencies: FastAPI dependencies reading the application session

The authentication flow:
1. An anonymous request to a protected page is challenged
2. The user agent is sent to the authority with state, nonce and PKCE
3. The authority redirects back to /signin-oidc
4. The gateway exchanges the code, maps claims and signs the user in locally
5. Any remote failure lands on /Account/Login?error=<message>
"""
