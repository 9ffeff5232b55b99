from .error_middleware import ErrorMiddleware

__all__ = ['ErrorMiddleware']
