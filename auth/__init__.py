"""auth/ -- Authentication package for DevSolve.

Token codec, session issuance, rate limiting, the route guard, password and
one-time token handling, the user repository and account email.

Layer rule: auth/ imports stdlib, third-party libraries and core/ only.
It does NOT import from api/, web/, or qa/.
api/ and web/ import from auth/, not the other way around.
"""
