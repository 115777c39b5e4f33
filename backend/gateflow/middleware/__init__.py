from gateflow.middleware.request_log import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
