#!/usr/bin/env python3
"""
Redis connection pools for the event queue and the Redis variable backend.

Passwords are tried in order CURRENT then NEXT so a password rotation does
not need a coordinated restart. With neither set the pool connects without
AUTH (a local Redis on the monitored host).
"""

import logging
from typing import List, Optional, Tuple

import redis


def _pool_kwargs(host: str, port: int, password: Optional[str], tls_enabled: bool,
                 ca_cert_path: Optional[str], max_connections: int) -> dict:
    kwargs = {
        'host': host,
        'port': port,
        'decode_responses': True,
        'socket_connect_timeout': 5,
        'socket_keepalive': True,
        'max_connections': max_connections,
    }
    if password:
        kwargs['password'] = password
    if tls_enabled:
        kwargs['connection_class'] = redis.SSLConnection
        kwargs['ssl_cert_reqs'] = 'required'
        if ca_cert_path:
            kwargs['ssl_ca_certs'] = ca_cert_path
    return kwargs


def get_redis_pool(
    *,
    host: str,
    port: int,
    tls_enabled: bool = False,
    ca_cert_path: Optional[str] = None,
    password_current: Optional[str] = None,
    password_next: Optional[str] = None,
    max_connections: int = 10,
    logger: Optional[logging.Logger] = None,
) -> redis.ConnectionPool:
    """Build a pool and PING through it; raises the last connection error if every attempt fails."""
    log = logger or logging.getLogger(__name__)

    attempts: List[Tuple[str, Optional[str]]] = []
    if password_current:
        attempts.append(("CURRENT", password_current))
    if password_next:
        attempts.append(("NEXT", password_next))
    if not attempts:
        attempts.append(("no", None))

    last_error: Optional[Exception] = None
    for label, password in attempts:
        pool = redis.ConnectionPool(**_pool_kwargs(host, port, password, tls_enabled,
                                                   ca_cert_path, max_connections))
        try:
            log.info(f"Connecting to Redis at {host}:{port} with {label} password...")
            redis.Redis(connection_pool=pool).ping()
            return pool
        except redis.exceptions.RedisError as e:
            last_error = e
            pool.disconnect()
            log.warning(f"Redis connection with {label} password failed: {e}")

    raise last_error
