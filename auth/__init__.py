"""auth/ -- Token authentication, Pro entitlement and session revocation.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and ratelimit/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
