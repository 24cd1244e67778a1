"""
ASGI middleware that lets the frontend keep calling the server through its
``/strapi`` proxy path.
"""
from loguru import logger

logger = logger.bind(module="middleware")


def strip_prefix(path: str, prefix: str) -> str:
    """'/strapi/api/x' -> '/api/x', '/strapi' -> '/'; other paths are untouched."""
    if not prefix or not path.startswith(prefix):
        return path
    rest = path[len(prefix):]
    if rest == "":
        return "/"
    if not rest.startswith("/"):
        return path
    return rest


class StripPrefixMiddleware:
    def __init__(self, app, prefix: str = "/strapi"):
        self.app = app
        self.prefix = prefix.rstrip("/")

    async def __call__(self, scope, receive, send):
        if scope["type"] in ("http", "websocket"):
            path = scope.get("path", "")
            stripped = strip_prefix(path, self.prefix)
            if stripped != path:
                logger.debug(f"Rewrote {path} -> {stripped}")
                scope = dict(scope)
                scope["path"] = stripped
                scope["raw_path"] = stripped.encode("utf-8")
        await self.app(scope, receive, send)
