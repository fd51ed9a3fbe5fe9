"""auth/ -- Credentials, lockout, tokens and session lifecycle for SessionKeeper.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core.config (settings). ratelimit.py is the one module that reads settings
at import time.
It does NOT import from api/ or web/.
api/ and web/ import from auth/, not the other way around.
"""
