# core/request_guards.py
from fastapi import Request

from core.exceptions import UnsupportedMediaTypeError

ANONYMOUS_CLIENT = "anonymous"


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For entry; callers without it share one bucket."""
    forwarded_for = request.headers.get("x-forwarded-for", "")
    first = forwarded_for.split(",")[0].strip()
    return first or ANONYMOUS_CLIENT


def require_json_content_type(request: Request) -> None:
    content_type = request.headers.get("content-type", "")
    if content_type.split(";")[0].strip().lower() != "application/json":
        raise UnsupportedMediaTypeError("Content-Type must be application/json.")
