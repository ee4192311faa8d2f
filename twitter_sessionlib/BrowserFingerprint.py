import random
import secrets
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AntiDetectionConfig:
    """
    フィンガープリント生成・ヘッダー組み立て・リクエスト間隔制御の挙動を決めるパラメーター
    確率はいずれも 0.0 ~ 1.0 で指定する (デフォルト値は実ブラウザのトラフィックを観測して決めた値)
    """

    # リクエスト前の待機を行うかどうか
    enable_request_delay: bool = True
    # 待機時間にランダムなジッターを加えるかどうか
    enable_jitter: bool = True
    # ヘッダーのランダムな揺らぎ (User-Agent の小文字化・Purpose・X-Forwarded-For) を入れるかどうか
    enable_header_randomization: bool = True

    # フィンガープリントごとの基本待機時間 (ミリ秒 / 上限は含まない)
    min_delay_ms: int = 100
    max_delay_ms: int = 2000
    # 1 リクエストごとに加えるジッターの最大値 (ミリ秒)
    max_jitter_ms: int = 500
    # 同一フィンガープリントでのリクエスト数に比例して増える待機時間と、その上限 (ミリ秒)
    count_penalty_ms: int = 50
    max_count_penalty_ms: int = 1000
    # フィンガープリントを自動でローテーションする間隔 (ミリ秒)
    rotation_interval_ms: int = 300000

    # 1 回の生成でモバイル端末の User-Agent を候補に含める確率
    mobile_pool_probability: float = 0.1
    # DNT ヘッダーを 1 にする確率
    dnt_probability: float = 0.3
    # navigator.doNotTrack を 1 にする確率 (DNT とは独立に決める)
    do_not_track_probability: float = 0.2
    # Cache-Control / Pragma を no-cache にする確率
    no_cache_probability: float = 0.1
    # Cookie が有効なブラウザとして振る舞う確率
    cookie_enabled_probability: float = 0.95

    # User-Agent ヘッダーのキーを小文字で送る確率
    lowercase_user_agent_probability: float = 0.1
    # API リクエストに Purpose: prefetch を付与する確率
    prefetch_probability: float = 0.3
    # API リクエストに X-Forwarded-For を付与する確率
    forwarded_for_probability: float = 0.2

    # guest_id Cookie がある場合に X-XP-Forwarded-For ヘッダーを付与するかどうか
    enable_xpff_header: bool = True
    # X-Twitter-Client-Language に送る言語
    client_language: str = 'en'

    def __post_init__(self) -> None:
        if self.min_delay_ms < 0 or self.max_delay_ms <= self.min_delay_ms:
            raise ValueError('max_delay_ms must be greater than min_delay_ms (and min_delay_ms must not be negative).')
        if self.rotation_interval_ms <= 0:
            raise ValueError('rotation_interval_ms must be positive.')
        for name in (
            'mobile_pool_probability',
            'dnt_probability',
            'do_not_track_probability',
            'no_cache_probability',
            'cookie_enabled_probability',
            'lowercase_user_agent_probability',
            'prefetch_probability',
            'forwarded_for_probability',
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f'{name} must be between 0.0 and 1.0 (got {value}).')


DEFAULT_CONFIG = AntiDetectionConfig()


@dataclass(frozen=True)
class BrowserFingerprint:
    """
    1 つの「ブラウザ」として振る舞うためのヘッダー値とタイミングパラメーターの組
    各値は user_agent と矛盾しないように生成される (Sec-CH-UA は Chromium 系のみ、など)
    """

    user_agent: str
    accept_language: str
    accept_encoding: str
    accept: str
    sec_fetch_dest: str
    sec_fetch_mode: str
    sec_fetch_site: str
    sec_ch_ua: str
    sec_ch_ua_mobile: str
    sec_ch_ua_platform: str
    dnt: str
    upgrade_insecure_requests: str
    cache_control: str
    pragma: str
    connection: str
    viewport_width: int
    viewport_height: int
    timezone: str
    cookie_enabled: bool
    do_not_track: str
    # X-Client-Transaction-Id として使う相関 ID (認証情報としては使わない)
    session_id: str
    # リクエスト前に待機する基本時間 (ミリ秒)
    request_delay: int

    @property
    def is_mobile(self) -> bool:
        return is_mobile_user_agent(self.user_agent)


# デスクトップ版 Chrome
CHROME_USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/118.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 11.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 14_1) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36',
]

# デスクトップ版 Firefox
FIREFOX_USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:120.0) Gecko/20100101 Firefox/120.0',
    'Mozilla/5.0 (Windows NT 11.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:120.0) Gecko/20100101 Firefox/120.0',
    'Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0',
    'Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0',
]

# デスクトップ版 Safari
SAFARI_USER_AGENTS = [
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.6 Safari/605.1.15',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 14_1) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15',
]

# モバイル端末 (たまにだけ混ぜる)
MOBILE_USER_AGENTS = [
    'Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1',
    'Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1',
    'Mozilla/5.0 (Linux; Android 14; SM-G998B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36',
    'Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Mobile Safari/537.36',
]

DESKTOP_USER_AGENTS = CHROME_USER_AGENTS + FIREFOX_USER_AGENTS + SAFARI_USER_AGENTS

ACCEPT_LANGUAGES = [
    'en-US,en;q=0.9',
    'en-US,en;q=0.9,es;q=0.8',
    'en-US,en;q=0.9,fr;q=0.8',
    'en-GB,en;q=0.9',
    'en-US,en;q=0.9,de;q=0.8',
    'en,en-US;q=0.9',
    'en-US,en;q=0.8,es;q=0.7',
]

COMMON_RESOLUTIONS = [
    (1920, 1080),
    (1366, 768),
    (1440, 900),
    (1536, 864),
    (1280, 720),
    (1600, 900),
    (1024, 768),
    (1280, 800),
    (1680, 1050),
    (2560, 1440),
]

TIMEZONES = [
    'America/New_York',
    'America/Los_Angeles',
    'America/Chicago',
    'America/Denver',
    'Europe/London',
    'Europe/Paris',
    'Europe/Berlin',
    'Asia/Tokyo',
    'Australia/Sydney',
]

DOCUMENT_ACCEPT = (
    'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8,'
    'application/signed-exchange;v=b3;q=0.7'
)


def is_chromium_user_agent(user_agent: str) -> bool:
    # iOS の Safari は "Safari" を含むが Chrome/ を含まない
    return 'Chrome/' in user_agent and 'Firefox' not in user_agent


def is_mobile_user_agent(user_agent: str) -> bool:
    return 'Mobile' in user_agent or 'iPhone' in user_agent or 'Android' in user_agent


def get_sec_ch_ua(user_agent: str) -> str:
    """
    User-Agent から Sec-CH-UA ヘッダーの値を導出する
    Firefox と Safari は Sec-CH-UA を送らないため空文字列を返す

    Args:
        user_agent (str): User-Agent

    Returns:
        str: Sec-CH-UA ヘッダーの値
    """

    if not is_chromium_user_agent(user_agent):
        return ''
    if 'Chrome/120' in user_agent:
        return '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"'
    if 'Chrome/119' in user_agent:
        return '"Google Chrome";v="119", "Chromium";v="119", "Not?A_Brand";v="24"'
    if 'Chrome/118' in user_agent:
        return '"Chromium";v="118", "Google Chrome";v="118", "Not=A?Brand";v="99"'
    return '"Not_A Brand";v="8", "Chromium";v="120"'


def get_sec_ch_ua_platform(user_agent: str) -> str:
    # Android の User-Agent は "Linux" も含むので先に判定する
    if 'Android' in user_agent:
        return '"Android"'
    if 'iPhone' in user_agent:
        return '"iOS"'
    if 'Windows NT' in user_agent:
        return '"Windows"'
    if 'Macintosh' in user_agent:
        return '"macOS"'
    if 'Linux' in user_agent:
        return '"Linux"'
    return '"Windows"'


def generate_browser_fingerprint(
    rng: Optional[random.Random] = None,
    config: Optional[AntiDetectionConfig] = None,
) -> BrowserFingerprint:
    """
    ランダムだが内部的に矛盾のないブラウザフィンガープリントを生成する
    乱数源を差し替えられるようにしているので、テストではシード付きの random.Random を渡せば再現可能になる

    Args:
        rng (Optional[random.Random], optional): 乱数源. Defaults to None (OS の乱数でシードした random.Random を使う).
        config (Optional[AntiDetectionConfig], optional): 確率などのパラメーター. Defaults to None.

    Returns:
        BrowserFingerprint: 生成されたフィンガープリント
    """

    rng = rng or random.Random()
    config = config or DEFAULT_CONFIG

    # モバイル端末は一定確率でのみ候補に含める
    candidates = list(DESKTOP_USER_AGENTS)
    if rng.random() < config.mobile_pool_probability:
        candidates += MOBILE_USER_AGENTS

    user_agent = rng.choice(candidates)
    accept_language = rng.choice(ACCEPT_LANGUAGES)
    viewport_width, viewport_height = rng.choice(COMMON_RESOLUTIONS)
    timezone = rng.choice(TIMEZONES)

    # Cache-Control と Pragma は実ブラウザ同様に揃えて変化させる
    no_cache = rng.random() < config.no_cache_probability

    return BrowserFingerprint(
        user_agent=user_agent,
        accept_language=accept_language,
        accept_encoding='gzip, deflate, br',
        accept=DOCUMENT_ACCEPT,
        sec_fetch_dest='document',
        sec_fetch_mode='navigate',
        sec_fetch_site='none',
        sec_ch_ua=get_sec_ch_ua(user_agent),
        sec_ch_ua_mobile='?1' if is_mobile_user_agent(user_agent) else '?0',
        sec_ch_ua_platform=get_sec_ch_ua_platform(user_agent),
        # DNT と doNotTrack はあえて独立に決める (実際のブラウザでも一致しないことがある)
        dnt='1' if rng.random() < config.dnt_probability else '0',
        upgrade_insecure_requests='1',
        cache_control='no-cache' if no_cache else 'max-age=0',
        pragma='no-cache' if no_cache else '',
        connection='keep-alive',
        viewport_width=viewport_width,
        viewport_height=viewport_height,
        timezone=timezone,
        cookie_enabled=rng.random() < config.cookie_enabled_probability,
        do_not_track='1' if rng.random() < config.do_not_track_probability else '0',
        session_id=secrets.token_hex(16),
        request_delay=rng.randrange(config.min_delay_ms, config.max_delay_ms),
    )
