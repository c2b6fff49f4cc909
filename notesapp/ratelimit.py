"""Per-IP fixed-window request limits kept in process memory."""
import time
from functools import wraps
from threading import Lock

from flask import current_app, request

from notesapp.errors import RateLimited


SWEEP_INTERVAL = 60


class RateLimiter:
    def __init__(self):
        self._state = {}
        self._lock = Lock()
        self._last_sweep = None

    def hit(self, key, limit, window, now=None):
        """Count a request; return seconds to wait when ``key`` is over ``limit``."""
        now = time.time() if now is None else now
        with self._lock:
            self._sweep(now)
            state = self._state.get(key)
            if state is None or now - state['ts'] >= window:
                self._state[key] = {'ts': now, 'count': 1, 'window': window}
                return 0
            state['count'] += 1
            if state['count'] <= limit:
                return 0
            return max(1, int(window - (now - state['ts'])))

    def _sweep(self, now):
        # caller holds the lock
        if self._last_sweep is not None and now - self._last_sweep < SWEEP_INTERVAL:
            return
        self._last_sweep = now
        expired = [key for key, state in self._state.items() if now - state['ts'] >= state['window']]
        for key in expired:
            del self._state[key]

    def reset(self):
        with self._lock:
            self._state.clear()


def _client_ip():
    return request.remote_addr or 'unknown'


def check_limit(scope, limit, window, message):
    if not current_app.config['RATELIMIT_ENABLED']:
        return
    limiter = current_app.extensions['rate_limiter']
    retry_after = limiter.hit(f'{scope}:{_client_ip()}', limit, window)
    if retry_after:
        raise RateLimited(message, retry_after=retry_after)


def rate_limit(scope, limit, window, message='Too many requests, please try again later.'):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            check_limit(scope, limit, window, message)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def init_app(app):
    app.extensions['rate_limiter'] = RateLimiter()

    @app.before_request
    def global_limit():
        if request.path.startswith('/api/'):
            check_limit('global', 100, 15 * 60, 'Too many requests from this IP, please try again later.')
