from __future__ import annotations

import os

import redis


def get_redis_url() -> str:
    return os.environ.get("REDIS_URL", "redis://localhost:6379/0")


def get_canvas_namespace() -> str:
    # Lets several canvases (or test runs) share one Redis.
    return os.environ.get("CANVAS_NAMESPACE", "default")


def create_redis(url: str | None = None) -> redis.Redis:
    # decode_responses=True => strings in/out instead of bytes
    return redis.Redis.from_url(url or get_redis_url(), decode_responses=True, health_check_interval=30)
