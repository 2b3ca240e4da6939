"""Shared rate limiter for key-management and verification endpoints.

Uses slowapi (Starlette-compatible rate limiting). The public verify endpoint
is the only unauthenticated route that touches the key store, so it shares
the same cap to blunt key-guessing.

The Limiter instance is created here and shared between:
  - newsportal/keys/router.py  (route decorators)
  - newsportal/main.py         (app.state.limiter + SlowAPIMiddleware registration)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

KEY_MANAGEMENT_RATE_LIMIT = "20/minute"
