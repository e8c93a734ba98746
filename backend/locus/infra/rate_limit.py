"""Fixed-window Redis rate limiting for per-user write endpoints."""

from __future__ import annotations

import math
import time
from typing import Optional, Tuple

from locus.infra.redis import redis_client


class RateLimitExceeded(Exception):
	"""Raised when an actor has spent its budget for the current window."""

	def __init__(self, kind: str, retry_after: int = 0) -> None:
		super().__init__(kind)
		self.kind = kind
		self.retry_after = retry_after


async def hit(kind: str, actor_id: str, *, window_seconds: int = 60, now: Optional[float] = None) -> Tuple[int, int]:
	"""Count one operation; returns (count in window, seconds until the window rolls over)."""
	now = now or time.time()
	window = max(1, int(window_seconds))
	slot = int(math.floor(now / window))
	key = f"rl:{kind}:{actor_id}:{slot}"
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, window)
		count, _ = await pipe.execute()
	return int(count), max(1, math.ceil((slot + 1) * window - now))


async def allow(
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> bool:
	if limit <= 0:
		return False
	count, _ = await hit(kind, actor_id, window_seconds=window_seconds, now=now)
	return count <= limit


async def enforce(kind: str, actor_id: str, *, limit: int, window_seconds: int = 60) -> None:
	if limit <= 0:
		raise RateLimitExceeded(kind, retry_after=window_seconds)
	count, retry_after = await hit(kind, actor_id, window_seconds=window_seconds)
	if count > limit:
		raise RateLimitExceeded(kind, retry_after=retry_after)
