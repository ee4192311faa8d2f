import random
from typing import Mapping, Optional
from urllib.parse import urlparse

from requests.structures import CaseInsensitiveDict

from twitter_sessionlib.BrowserFingerprint import DEFAULT_CONFIG, AntiDetectionConfig, BrowserFingerprint


# ヘッダーの送信先
API_ORIGIN = 'https://api.x.com'
WEB_ORIGIN = 'https://x.com'

# API リクエスト時の Accept ヘッダー
API_ACCEPT = 'application/json, text/plain, */*'

# X-Forwarded-For に使うアドレス帯の先頭オクテット (残りのオクテットはランダム)
FORWARDED_FOR_PREFIXES = [10, 172, 192, 24, 76, 98]


def apply_advanced_browser_headers(
    headers: 'CaseInsensitiveDict[str]',
    fingerprint: BrowserFingerprint,
    url: Optional[str] = None,
    rng: Optional[random.Random] = None,
    config: Optional[AntiDetectionConfig] = None,
) -> None:
    """
    フィンガープリントの値を実ブラウザと同じ順序でヘッダーにセットする
    CaseInsensitiveDict は挿入順を保持し、既存のキーへの代入では位置を変えないため、
    呼び出し元が先に入れたヘッダーはその位置のまま値だけ上書きされる

    Args:
        headers (CaseInsensitiveDict[str]): ヘッダーをセットする先
        fingerprint (BrowserFingerprint): 適用するフィンガープリント
        url (Optional[str], optional): 送信先 URL (https:// の場合のみ Sec-Fetch-* を付与する). Defaults to None (API_ORIGIN).
        rng (Optional[random.Random], optional): 乱数源. Defaults to None.
        config (Optional[AntiDetectionConfig], optional): 確率などのパラメーター. Defaults to None.
    """

    rng = rng or random.Random()
    config = config or DEFAULT_CONFIG
    url = url or API_ORIGIN

    ordered_headers = [
        ('Host', urlparse(url).netloc),
        ('User-Agent', fingerprint.user_agent),
        ('Accept', fingerprint.accept),
        ('Accept-Language', fingerprint.accept_language),
        ('Accept-Encoding', fingerprint.accept_encoding),
        ('DNT', fingerprint.dnt),
        ('Connection', fingerprint.connection),
        ('Upgrade-Insecure-Requests', fingerprint.upgrade_insecure_requests),
    ]

    # Sec-Fetch-* はセキュアなコンテキストでしか送られない
    if url.startswith('https://'):
        ordered_headers += [
            ('Sec-Fetch-Dest', fingerprint.sec_fetch_dest),
            ('Sec-Fetch-Mode', fingerprint.sec_fetch_mode),
            ('Sec-Fetch-Site', fingerprint.sec_fetch_site),
        ]

    # Sec-CH-UA* は Chromium 系ブラウザのみ
    if fingerprint.sec_ch_ua:
        ordered_headers += [
            ('Sec-CH-UA', fingerprint.sec_ch_ua),
            ('Sec-CH-UA-Mobile', fingerprint.sec_ch_ua_mobile),
            ('Sec-CH-UA-Platform', fingerprint.sec_ch_ua_platform),
        ]

    if fingerprint.cache_control:
        ordered_headers.append(('Cache-Control', fingerprint.cache_control))
    if fingerprint.pragma:
        ordered_headers.append(('Pragma', fingerprint.pragma))

    for key, value in ordered_headers:
        if value:
            headers[key] = value

    # 一部のサーバーはヘッダーキーの大文字小文字を見ているため、たまに非標準なクライアントのように小文字で送る
    if config.enable_header_randomization is True and rng.random() < config.lowercase_user_agent_probability:
        user_agent = headers.pop('User-Agent', None)
        if user_agent:
            headers['user-agent'] = user_agent


def generate_random_ip(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.Random()
    prefix = rng.choice(FORWARDED_FOR_PREFIXES)
    return f'{prefix}.{rng.randrange(256)}.{rng.randrange(256)}.{rng.randrange(256)}'


def build_twitter_api_headers(
    fingerprint: BrowserFingerprint,
    base_headers: Optional[Mapping[str, str]] = None,
    rng: Optional[random.Random] = None,
    config: Optional[AntiDetectionConfig] = None,
) -> 'CaseInsensitiveDict[str]':
    """
    API (api.x.com) へのリクエストに使うヘッダーを組み立てる
    待機は行わないので、通常は RequestDispatcher.get_twitter_api_headers() を使う

    Args:
        fingerprint (BrowserFingerprint): 適用するフィンガープリント
        base_headers (Optional[Mapping[str, str]], optional): 先頭に入れておくヘッダー. Defaults to None.
        rng (Optional[random.Random], optional): 乱数源. Defaults to None.
        config (Optional[AntiDetectionConfig], optional): 確率などのパラメーター. Defaults to None.

    Returns:
        CaseInsensitiveDict[str]: 順序付きのヘッダー
    """

    rng = rng or random.Random()
    config = config or DEFAULT_CONFIG

    headers: CaseInsensitiveDict[str] = CaseInsensitiveDict(base_headers or {})
    apply_advanced_browser_headers(headers, fingerprint, API_ORIGIN, rng, config)

    headers['Referer'] = f'{WEB_ORIGIN}/'
    headers['Origin'] = WEB_ORIGIN
    headers['X-Twitter-Active-User'] = 'yes'
    headers['X-Twitter-Client-Language'] = config.client_language
    # API リクエストなので Accept は JSON 向けに差し替える (位置はそのまま)
    headers['Accept'] = API_ACCEPT
    headers['X-Requested-With'] = 'XMLHttpRequest'
    headers['X-Client-Transaction-Id'] = fingerprint.session_id

    if config.enable_header_randomization is True:
        if rng.random() < config.prefetch_probability:
            headers['Purpose'] = 'prefetch'
        if rng.random() < config.forwarded_for_probability:
            headers['X-Forwarded-For'] = generate_random_ip(rng)

    return headers


def build_twitter_web_headers(
    fingerprint: BrowserFingerprint,
    base_headers: Optional[Mapping[str, str]] = None,
    rng: Optional[random.Random] = None,
    config: Optional[AntiDetectionConfig] = None,
) -> 'CaseInsensitiveDict[str]':
    """
    Web (x.com) のページ取得に使うヘッダーを組み立てる

    Args:
        fingerprint (BrowserFingerprint): 適用するフィンガープリント
        base_headers (Optional[Mapping[str, str]], optional): 先頭に入れておくヘッダー. Defaults to None.
        rng (Optional[random.Random], optional): 乱数源. Defaults to None.
        config (Optional[AntiDetectionConfig], optional): 確率などのパラメーター. Defaults to None.

    Returns:
        CaseInsensitiveDict[str]: 順序付きのヘッダー
    """

    headers: CaseInsensitiveDict[str] = CaseInsensitiveDict(base_headers or {})
    apply_advanced_browser_headers(headers, fingerprint, WEB_ORIGIN, rng, config)

    headers['Referer'] = f'{WEB_ORIGIN}/home'
    headers['Origin'] = WEB_ORIGIN

    return headers
