from .checkout import bp as checkout_bp
from .health import health_bp
from .webhook import webhook_bp

__all__ = [
    "checkout_bp",
    "health_bp",
    "webhook_bp",
]
