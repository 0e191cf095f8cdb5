# backend/vasa/middleware/__init__.py
from vasa.middleware.security import SecurityHeadersMiddleware

__all__ = ["SecurityHeadersMiddleware"]
