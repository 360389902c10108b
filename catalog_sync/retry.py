"""リトライモジュール — 指数バックオフ付きの再試行.

通常エラーとレート制限（HTTP 429 / "too many requests" / "rate limit"）で
別々の base / max 遅延を使う。
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from catalog_sync.config import RetryConfig
from catalog_sync.errors import RemoteRateLimited, RemoteTransient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_error_status(error: BaseException | None) -> int | None:
    """例外から HTTP ステータスを取り出す.

    status / code 属性、または response.status_code（requests / httpx）を見る。
    """
    if error is None:
        return None
    for attr in ("status", "code"):
        value = getattr(error, attr, None)
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    response = getattr(error, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None


def is_rate_limit_error(error: BaseException | None) -> bool:
    if error is None:
        return False
    if get_error_status(error) == 429:
        return True
    message = str(getattr(error, "message", "") or error).lower()
    return "too many requests" in message or "rate limit" in message


def jitter(max_ms: int) -> float:
    """0〜max_ms ミリ秒のランダム値."""
    return random.uniform(0, max_ms) if max_ms > 0 else 0.0


def compute_retry_delay(config: RetryConfig, error: BaseException, attempt: int) -> float:
    """attempt 回目（0 始まり）の待機ミリ秒を計算する."""
    if is_rate_limit_error(error):
        base, cap = config.rate_limit_retry_ms, config.rate_limit_max_delay_ms
    else:
        base, cap = config.retry_delay_ms, config.max_retry_delay_ms
    return min(base * 2**attempt, cap) + jitter(config.retry_jitter_ms)


class RetryRunner:
    """リモート操作を上限付きで再試行する.

    Args:
        config: リトライ設定。retry_limit は初回を除いた再試行回数。
        on_rate_limit: レート制限エラーを観測するたびに呼ばれるフック
    """

    def __init__(
        self,
        config: RetryConfig,
        on_rate_limit: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.config = config
        self.on_rate_limit = on_rate_limit

    async def with_retry(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        limit = self.config.retry_limit
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                rate_limited = is_rate_limit_error(e)
                if rate_limited and self.on_rate_limit is not None:
                    self.on_rate_limit(e)

                status = get_error_status(e)
                if attempt >= limit:
                    exc_class = RemoteRateLimited if rate_limited else RemoteTransient
                    logger.error("%s: リトライ上限に到達 (%d 回): %s", label, attempt + 1, e)
                    raise exc_class(label, status=status, attempts=attempt + 1) from e

                delay_ms = compute_retry_delay(self.config, e, attempt)
                status_label = f"status {status}" if status else "エラー"
                logger.warning(
                    "%s: %s, 再試行 %d/%d (%.0f ms 後)",
                    label, status_label, attempt + 1, limit, delay_ms,
                )
                await asyncio.sleep(delay_ms / 1000)
                attempt += 1
