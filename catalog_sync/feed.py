"""フィード取得モジュール.

取得戦略:
  1. URL が設定されていればダウンロード（リトライ付き、任意でファイル保存）
  2. URL が無ければローカルファイルを読む
取得したバイト列は XML 宣言のエンコーディングでデコードする。
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

import requests

from catalog_sync.config import DOWNLOAD_TIMEOUT, FEED_KINDS, SupplierConfig
from catalog_sync.errors import FeedUnavailable, RemoteTransient
from catalog_sync.retry import RetryRunner

logger = logging.getLogger(__name__)

_ENCODING_PATTERN = re.compile(r"""encoding=["']([^"']+)["']""", re.IGNORECASE)
_CP1251_ALIASES = {"windows-1251", "win-1251", "cp1251"}


@dataclass(frozen=True)
class FeedSource:
    kind: str
    url: str = ""
    file_path: str = ""
    save_path: str = ""


def build_feed_source(config: SupplierConfig, kind: str) -> FeedSource:
    """フィード種別 (full / price / stock) に対応する取得元を返す."""
    if kind not in FEED_KINDS:
        raise ValueError(f"Unknown feed kind: {kind}")
    path = config.paths.get(kind, "")
    return FeedSource(kind=kind, url=config.urls.get(kind, ""), file_path=path, save_path=path)


def detect_xml_encoding(buffer: bytes) -> str:
    """先頭 200 バイトの XML 宣言からエンコーディングを判定する."""
    if not buffer:
        return "utf-8"
    header = buffer[:200].decode("ascii", errors="ignore")
    match = _ENCODING_PATTERN.search(header)
    if not match:
        return "utf-8"
    if match.group(1).strip().lower() in _CP1251_ALIASES:
        return "windows-1251"
    return "utf-8"


def decode_xml_bytes(buffer: bytes) -> str:
    encoding = detect_xml_encoding(buffer)
    try:
        return buffer.decode(encoding)
    except UnicodeDecodeError:
        logger.warning("%s でデコードできません。UTF-8 で読み直します", encoding)
        return buffer.decode("utf-8", errors="replace")


def save_buffer(buffer: bytes, file_path: str | Path) -> None:
    """バイト列を保存する。親ディレクトリは必要に応じて作成."""
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(buffer)


def _download(url: str) -> bytes:
    resp = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
    resp.raise_for_status()
    return resp.content


async def fetch_buffer(url: str, retry: RetryRunner, label: str = "download") -> bytes:
    """URL からバイト列を取得する。HTTPError は status 付きでリトライ判定される."""
    return await retry.with_retry(lambda: asyncio.to_thread(_download, url), label)


async def load_feed_bytes(source: FeedSource, retry: RetryRunner, should_save: bool = False) -> bytes:
    """フィードのバイト列を取得する.

    Raises:
        FeedUnavailable: URL もファイルも無い、またはダウンロードに失敗した場合
    """
    label = f"{source.kind} xml download"
    if source.url:
        logger.info("XML ダウンロード: %s", source.url)
        try:
            buffer = await fetch_buffer(source.url, retry, label)
        except RemoteTransient as e:
            raise FeedUnavailable(f"{label} failed: {source.url}") from e
        if should_save and source.save_path:
            await asyncio.to_thread(save_buffer, buffer, source.save_path)
            logger.info("XML を保存: %s", source.save_path)
        return buffer

    if not source.file_path:
        raise FeedUnavailable(f"{source.kind}: neither URL nor file path is configured")
    path = Path(source.file_path)
    if not path.is_file():
        raise FeedUnavailable(f"{source.kind}: XML file not found: {path}")
    logger.info("XML 読み込み: %s", path)
    return await asyncio.to_thread(path.read_bytes)


async def load_feed_text(source: FeedSource, retry: RetryRunner, should_save: bool = False) -> str:
    return decode_xml_bytes(await load_feed_bytes(source, retry, should_save))


async def download_feed(source: FeedSource, retry: RetryRunner) -> Path | None:
    """フィードをダウンロードして save_path に保存するだけ（fetch コマンド用）.

    Returns:
        保存先パス。URL または保存先が未設定ならスキップして None。
    """
    if not source.url or not source.save_path:
        logger.warning("%s: URL または保存先が未設定のためスキップ", source.kind)
        return None
    await load_feed_bytes(source, retry, should_save=True)
    return Path(source.save_path)
