"""
Identity Package

Local accounts behind the external login: the SQLAlchemy-backed identity
store, the sign-in manager enforcing the confirmed-account policy, session
tokens and confirmation email delivery.
"""
