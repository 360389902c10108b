"""同期処理の例外階層.

致命的: FeedUnavailable, InvalidCatalogFormat, リトライ枯渇後の RemoteTransient
局所回復: RowInvalid（行を捨てて件数をログ）, BatchPartialFailure（二分割で切り分け）
"""

from __future__ import annotations

from dataclasses import dataclass


class SyncError(Exception):
    """同期処理の基本例外"""


class FeedUnavailable(SyncError):
    """フィードを取得できない

    URL もローカルファイルも無い、またはダウンロードのリトライが尽きた場合
    """


class InvalidCatalogFormat(SyncError):
    """フィードの必須ルート・コレクションが無い"""


class RowInvalid(SyncError):
    """1 行の必須項目が欠けている

    呼び出し側で行を捨てる。処理全体は止めない。
    """

    def __init__(self, reason: str, external_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.external_id = external_id


class RemoteTransient(SyncError):
    """リモート呼び出しの一時的な失敗（ネットワーク / 5xx / 429）

    リトライが尽きた時点で送出される。元の例外は __cause__ に残る。
    """

    kind = "transient"

    def __init__(self, label: str, status: int | None = None, attempts: int = 0) -> None:
        status_label = f"status {status}" if status else "error"
        super().__init__(f"{label}: {self.kind} {status_label} after {attempts} attempt(s)")
        self.label = label
        self.status = status
        self.attempts = attempts


class RemoteRateLimited(RemoteTransient):
    """レート制限（HTTP 429 など）"""

    kind = "rate-limited"


@dataclass
class RowFailure:
    """単独行まで分割しても書き込めなかった行."""

    table: str
    row: dict
    error: BaseException

    @property
    def external_id(self) -> str | None:
        return self.row.get("external_id")


class BatchPartialFailure(SyncError):
    """一部の行が書き込めなかった"""

    def __init__(self, table: str, failures: list[RowFailure]) -> None:
        ids = ", ".join(str(f.external_id) for f in failures[:10])
        super().__init__(f"{table}: {len(failures)} row(s) failed ({ids})")
        self.table = table
        self.failures = failures
