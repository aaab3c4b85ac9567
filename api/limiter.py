"""
api/limiter.py -- The process-wide slowapi Limiter.

api/main.py mounts it (app.state.limiter + SlowAPIMiddleware); the users
router decorates the credential-guessing endpoints with
@limiter.limit(settings.auth_rate_limit). Both must see this one object or
the per-route limits are never counted.

Clients are keyed by remote address. Counters live in
Settings.rate_limit_storage_uri: "memory://" is per-process, point it at
"redis://..." when running several workers.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=get_settings().rate_limit_storage_uri,
    headers_enabled=False,
)
