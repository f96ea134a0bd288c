"""ratelimit/ -- Shared, datastore-backed request rate limiting.

Layer rule: ratelimit/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or auth/. auth/ and api/ import from ratelimit/.
"""
