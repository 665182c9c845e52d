# core/rate_limiter.py
"""
Hourly send limits for campaign delivery

Counters live in Redis under one key per SMTP account and UTC hour, so every
worker shares the same budget. A token is reserved with an atomic INCR before
each send and handed back with DECR when the budget is already spent.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import redis

logger = logging.getLogger(__name__)

BUCKET_TTL_SECONDS = 7200


@dataclass
class Reservation:
    """Outcome of a token reservation"""
    allowed: bool
    count: int
    retry_at: Optional[datetime] = None


class HourlyRateLimiter:
    """Per-key emails-per-hour budget backed by Redis"""

    def __init__(self, redis_client, prefix: str = 'mailcannon:rate'):
        self.redis_client = redis_client
        self.prefix = prefix

    def bucket_key(self, key: str, now: datetime) -> str:
        return f"{self.prefix}:{key}:{now.strftime('%Y-%m-%d:%H')}"

    def reserve(self, key: str, max_per_hour: int, now: datetime) -> Reservation:
        """
        Reserve one send from the current hour's budget

        Args:
            key: Budget owner, usually the SMTP account id
            max_per_hour: Budget size, 0 or less means unlimited
            now: Current naive UTC time

        Returns:
            Reservation; when refused, retry_at is the start of the next hour
        """
        if not max_per_hour or max_per_hour <= 0:
            return Reservation(True, 0)

        bucket = self.bucket_key(key, now)
        try:
            pipe = self.redis_client.pipeline()
            pipe.incr(bucket)
            pipe.expire(bucket, BUCKET_TTL_SECONDS)
            new_value, _ = pipe.execute()
            new_value = int(new_value)

            if new_value > max_per_hour:
                self.redis_client.decr(bucket)
                next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
                logger.info(f"Hourly limit {max_per_hour} reached for {key}, next slot at {next_hour.isoformat()}")
                return Reservation(False, new_value - 1, next_hour)

            return Reservation(True, new_value)

        except redis.RedisError:
            logger.error(f"Error reserving rate limit token for {key}, allowing send", exc_info=True)
            return Reservation(True, 0)

    def current(self, key: str, now: datetime) -> int:
        try:
            value = self.redis_client.get(self.bucket_key(key, now))
        except redis.RedisError:
            logger.error(f"Error reading rate limit counter for {key}", exc_info=True)
            return 0
        return int(value) if value else 0


def send_interval(speed_limit: int, delay: int, rng: random.Random = None, jitter: float = 0.25) -> float:
    """
    Seconds to wait before the next send of a campaign

    Spreads speed_limit sends over the hour with +/- jitter so the traffic
    does not look machine generated; delay is a floor on the result.

    Args:
        speed_limit: Emails per hour, 0 means no pacing
        delay: Minimum seconds between two sends
        rng: Random source
        jitter: Relative spread of the paced interval
    """
    rng = rng or random
    floor = max(0, int(delay or 0))
    if not speed_limit or speed_limit <= 0:
        return float(floor)

    base = 3600.0 / speed_limit
    paced = base * rng.uniform(1 - jitter, 1 + jitter)
    return max(float(floor), paced)
