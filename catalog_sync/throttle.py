"""スロットリングモジュール — バッチ並列数とグループ間待機の適応制御 (AIMD).

レート制限を受けたグループの後: 待機 ×1.5、並列数 -1
連続 ramp_groups 回成功した後: 待機 ×0.9、並列数 +1
値は常に [min, max] に収める。インスタンスは同期 1 回ごとに作る。
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass

from catalog_sync.config import UpsertConfig

logger = logging.getLogger(__name__)

BACKOFF_FACTOR = 1.5
RECOVERY_FACTOR = 0.9


def clamp(value, low, high):
    return min(high, max(low, value))


@dataclass
class ThrottleState:
    delay_ms: int
    concurrency: int
    min_delay_ms: int
    max_delay_ms: int
    min_concurrency: int
    max_concurrency: int
    success_streak: int = 0
    rate_limit_hits: int = 0


class ThrottleController:
    def __init__(self, config: UpsertConfig) -> None:
        min_delay = min(config.batch_delay_min_ms, config.batch_delay_max_ms)
        max_delay = max(config.batch_delay_min_ms, config.batch_delay_max_ms)
        min_conc = max(1, min(config.batch_min_concurrency, config.batch_max_concurrency))
        max_conc = max(min_conc, config.batch_max_concurrency)
        self.state = ThrottleState(
            delay_ms=clamp(config.batch_delay_ms, min_delay, max_delay),
            concurrency=clamp(config.batch_concurrency, min_conc, max_conc),
            min_delay_ms=min_delay,
            max_delay_ms=max_delay,
            min_concurrency=min_conc,
            max_concurrency=max_conc,
        )
        self.ramp_groups = max(1, config.batch_ramp_groups)
        self.jitter_ms = max(0, config.batch_jitter_ms)

    @property
    def concurrency(self) -> int:
        return self.state.concurrency

    @property
    def delay_ms(self) -> int:
        return self.state.delay_ms

    @property
    def rate_limit_hits(self) -> int:
        return self.state.rate_limit_hits

    def record_rate_limit(self, error: BaseException | None = None) -> None:
        """RetryRunner の on_rate_limit フック."""
        self.state.rate_limit_hits += 1

    def adjust(self, rate_limited: bool) -> None:
        """1 グループ終了後に待機時間と並列数を調整する."""
        s = self.state
        if rate_limited:
            s.success_streak = 0
            s.delay_ms = clamp(round(s.delay_ms * BACKOFF_FACTOR), s.min_delay_ms, s.max_delay_ms)
            s.concurrency = max(s.min_concurrency, s.concurrency - 1)
            logger.warning("レート制限を検知: delay=%dms, concurrency=%d", s.delay_ms, s.concurrency)
            return

        s.success_streak += 1
        if s.success_streak >= self.ramp_groups:
            s.delay_ms = clamp(round(s.delay_ms * RECOVERY_FACTOR), s.min_delay_ms, s.max_delay_ms)
            s.concurrency = min(s.max_concurrency, s.concurrency + 1)
            s.success_streak = 0
            logger.debug("スロットル緩和: delay=%dms, concurrency=%d", s.delay_ms, s.concurrency)

    def next_delay_ms(self) -> float:
        jitter = random.uniform(0, self.jitter_ms) if self.jitter_ms > 0 else 0.0
        return self.state.delay_ms + jitter

    async def pause(self) -> None:
        """グループ間の待機（delay + ジッタ）."""
        delay_ms = self.next_delay_ms()
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)
