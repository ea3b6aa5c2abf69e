"""Redis 连接管理；支付锁的分布式实现依赖这里的 RedisClient"""
from .redis_client import (
    RedisClient,
    get_redis_client,
    init_redis_client,
    shutdown_redis_client,
)

__all__ = ["RedisClient", "get_redis_client", "init_redis_client", "shutdown_redis_client"]
