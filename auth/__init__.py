"""auth/ -- Token auth core for tokengate.

Codec, issuer, refresh-token store, session flows, FastAPI dependencies and
the client-side reauth coordinator.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/. api/ and core/ import from auth/,
not the other way around.
"""
