import asyncio
import logging
import random
import threading
import time
from typing import Awaitable, Callable, Optional

from twitter_sessionlib.BrowserFingerprint import (
    DEFAULT_CONFIG,
    AntiDetectionConfig,
    BrowserFingerprint,
    generate_browser_fingerprint,
)


logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


class BrowserFingerprintManager:
    """
    現在のブラウザフィンガープリントを保持し、一定時間ごとにローテーションする
    同一フィンガープリントでのリクエスト数が増えるほどリクエスト間隔を広げ、短時間に集中したアクセスを避ける

    1 つの TwitterClient が 1 つのインスタンスを持つのが基本だが、複数のクライアントで
    リクエスト間隔の管理を共有したい場合は同じインスタンスを明示的に渡せばよい
    """

    def __init__(
        self,
        config: Optional[AntiDetectionConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = _now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        BrowserFingerprintManager を初期化する

        Args:
            config (Optional[AntiDetectionConfig], optional): ローテーション間隔などのパラメーター. Defaults to None.
            rng (Optional[random.Random], optional): 乱数源 (テストではシード付きのものを渡す). Defaults to None.
            clock (Callable[[], float], optional): 現在時刻をミリ秒で返す関数. Defaults to time.time() * 1000.
            sleep (Callable[[float], Awaitable[None]], optional): 秒数を受け取って待機するコルーチン関数. Defaults to asyncio.sleep.
        """

        self.config = config or DEFAULT_CONFIG
        self._rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep

        self._current_fingerprint: Optional[BrowserFingerprint] = None
        self._last_rotation: float = 0.0
        self._request_count: int = 0
        # まだ一度もリクエストしていない状態では待機しない
        self._last_request_time: float = float('-inf')

        # スレッドから同時に呼ばれても (since, count, last_request_time) の読み書きが壊れないようにする
        self._lock = threading.Lock()

    @property
    def rotation_interval(self) -> int:
        return self.config.rotation_interval_ms

    @property
    def request_count(self) -> int:
        return self._request_count

    def current(self) -> BrowserFingerprint:
        """
        現在のフィンガープリントを取得する
        まだ生成されていないか、前回のローテーションからローテーション間隔以上が経過している場合はここで再生成する

        Returns:
            BrowserFingerprint: 現在のフィンガープリント
        """

        with self._lock:
            return self._current_locked()

    def rotate(self) -> BrowserFingerprint:
        """
        タイマーに関係なくフィンガープリントを強制的に再生成する
        ブロックやレートリミットを検知した際に呼び出すことを想定している

        Returns:
            BrowserFingerprint: 新しいフィンガープリント
        """

        with self._lock:
            return self._rotate_locked()

    def required_delay(self) -> float:
        """
        次のリクエストの前に空けるべき時間 (ミリ秒) を計算する
        呼び出すたびにリクエストカウンターが 1 増える

        Returns:
            float: フィンガープリントの基本待機時間 + ジッター + リクエスト数に応じたペナルティ (上限あり)
        """

        with self._lock:
            return self._required_delay_locked()

    # 別名
    get_request_delay = required_delay

    async def await_next_slot(self) -> None:
        """
        前回のリクエストから必要な時間が経過するまで待機する
        待機する前に「次のリクエスト時刻」を予約しておくので、並行して呼ばれた場合も後から来た呼び出しは
        先に予約された時刻を基準に待機し、リクエストカウンターも実際のリクエスト数と一致する
        キャンセル手段は用意していない (リクエストを破棄したい場合は呼び出し元で処理ごと破棄する)
        """

        with self._lock:
            now = self._clock()
            if self.config.enable_request_delay is False:
                self._last_request_time = now
                return
            delay = self._required_delay_locked()
            elapsed = now - self._last_request_time
            wait_ms = max(0.0, delay - elapsed)
            self._last_request_time = now + wait_ms

        if wait_ms > 0:
            logger.debug('Waiting %.0f ms before next request (request count: %d).', wait_ms, self._request_count)
            await self._sleep(wait_ms / 1000)

    def _current_locked(self) -> BrowserFingerprint:
        now = self._clock()
        if self._current_fingerprint is None or (now - self._last_rotation) > self.config.rotation_interval_ms:
            return self._rotate_locked()
        return self._current_fingerprint

    def _rotate_locked(self) -> BrowserFingerprint:
        self._current_fingerprint = generate_browser_fingerprint(self._rng, self.config)
        self._last_rotation = self._clock()
        self._request_count = 0
        logger.debug('Rotated browser fingerprint (user agent: %s).', self._current_fingerprint.user_agent)
        return self._current_fingerprint

    def _required_delay_locked(self) -> float:
        # カウントしてからフィンガープリントを取得する
        # ここでローテーションが起きた場合はカウンターが 0 に戻り、ペナルティはローテーション前から持ち越されない
        self._request_count += 1
        fingerprint = self._current_locked()

        jitter = 0.0
        if self.config.enable_jitter is True:
            jitter = self._rng.uniform(0, self.config.max_jitter_ms)
        penalty = min(self._request_count * self.config.count_penalty_ms, self.config.max_count_penalty_ms)

        return fingerprint.request_delay + jitter + penalty
