"""
Per-client request rate limiting shared by every router.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

import config

limiter = Limiter(key_func=get_remote_address, enabled=config.RATE_LIMIT_ENABLED)
