import logging

from fastapi import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from config import config

logger = logging.getLogger(__name__)


def get_client_key(request: Request) -> str:
    """Rate limit bucket per client IP: "ip:<addr>" """
    client_ip = get_remote_address(request)
    return f"ip:{client_ip if client_ip else 'unknown'}"


limiter = Limiter(key_func=get_client_key)


def get_settle_rate_limit() -> str:
    return config.rate_limit_settle


def get_verify_rate_limit() -> str:
    return config.rate_limit_verify


def setup_rate_limiting(app):
    """Attach the limiter and its 429 handler to the app"""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
