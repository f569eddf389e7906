"""
auth — identity for the request pipeline.

Sub-modules:
    authenticator — strategy registry, login / logout, session identity hooks
    strategies    — local email + password strategy, bcrypt hashing
    setup         — builds the configured Authenticator for an app
    middleware    — initialise + session-restore request stages
    guards        — require_login / require_anonymous dependencies
"""
