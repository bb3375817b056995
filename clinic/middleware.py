import logging
import time

logger = logging.getLogger(__name__)


class RequestLogMiddleware:
    """Log API requests with their status code and duration."""
    PREFIXES = ('/api/',)

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        path = request.path or ''
        if not any(path.startswith(p) for p in self.PREFIXES):
            return self.get_response(request)
        started = time.monotonic()
        response = self.get_response(request)
        elapsed_ms = (time.monotonic() - started) * 1000
        user = getattr(request, 'user', None)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, '%s %s -> %s (%.1f ms, user=%s)', request.method, path, response.status_code,
                   elapsed_ms, getattr(user, 'id', None))
        return response
