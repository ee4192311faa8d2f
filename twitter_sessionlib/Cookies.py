import copy
from http.cookiejar import Cookie, CookieJar
from typing import Iterable, Mapping, Optional, Union
from urllib.parse import urlparse

from requests.cookies import RequestsCookieJar


# Cookie をセットする際のドメイン (x.com とそのサブドメインすべてに送られる)
COOKIE_DOMAIN = '.x.com'

CookiesLike = Union[RequestsCookieJar, Mapping[str, str], Iterable[Cookie]]


def _domain_matches(cookie_domain: str, host: str) -> bool:
    cookie_domain = cookie_domain.lstrip('.')
    return host == cookie_domain or host.endswith('.' + cookie_domain)


def get_cookie_value(jar: RequestsCookieJar, name: str, url: Optional[str] = None) -> Optional[str]:
    """
    CookieJar から Cookie の値を取得する
    RequestsCookieJar.get() は同名の Cookie が複数のドメインにあると CookieConflictError を送出するため、
    url が指定されていればそのホストに送られる Cookie の中から、なければ最後にセットされたものを返す

    Args:
        jar (RequestsCookieJar): CookieJar
        name (str): Cookie 名
        url (Optional[str], optional): 送信先 URL. Defaults to None.

    Returns:
        Optional[str]: Cookie の値 (存在しない場合は None)
    """

    host = urlparse(url).hostname if url is not None else None
    value = None
    for cookie in jar:
        if cookie.name != name:
            continue
        if host is not None and not _domain_matches(cookie.domain, host):
            continue
        value = cookie.value
    return value


def build_cookie_header(jar: RequestsCookieJar, url: str) -> str:
    """
    指定された URL に送るべき Cookie を Cookie ヘッダーの形式に変換する

    Args:
        jar (RequestsCookieJar): CookieJar
        url (str): 送信先 URL

    Returns:
        str: Cookie ヘッダーの値 (送る Cookie がない場合は空文字列)
    """

    parsed_url = urlparse(url)
    host = parsed_url.hostname or ''
    path = parsed_url.path or '/'
    cookies: dict[str, str] = {}
    for cookie in jar:
        if not _domain_matches(cookie.domain, host):
            continue
        if not path.startswith(cookie.path or '/'):
            continue
        if cookie.secure and parsed_url.scheme != 'https':
            continue
        if cookie.value is None:
            continue
        cookies[cookie.name] = cookie.value
    return '; '.join(f'{key}={value}' for key, value in cookies.items())


def merge_cookies(jar: RequestsCookieJar, cookies: Iterable[Cookie]) -> None:
    """レスポンスで返ってきた Cookie を CookieJar に取り込む (同名・同ドメインの Cookie は上書きされる)"""

    for cookie in cookies:
        # Max-Age=0 などで削除を指示された Cookie
        if cookie.is_expired():
            if _has_cookie(jar, cookie):
                jar.clear(cookie.domain, cookie.path, cookie.name)
            continue
        jar.set_cookie(copy.copy(cookie))


def _has_cookie(jar: RequestsCookieJar, target: Cookie) -> bool:
    return any(
        cookie.name == target.name and cookie.domain == target.domain and cookie.path == target.path for cookie in jar
    )


def copy_cookie_jar(jar: RequestsCookieJar) -> RequestsCookieJar:
    new_jar = RequestsCookieJar()
    for cookie in jar:
        new_jar.set_cookie(copy.copy(cookie))
    return new_jar


def load_cookies(jar: RequestsCookieJar, cookies: CookiesLike) -> None:
    """
    RequestsCookieJar・dict・Cookie のリストのいずれかで渡された Cookie を CookieJar に読み込む
    dict で渡された場合は COOKIE_DOMAIN の Cookie として扱う

    Args:
        jar (RequestsCookieJar): 読み込み先の CookieJar
        cookies (CookiesLike): 読み込む Cookie
    """

    # RequestsCookieJar も Mapping なので、ドメイン情報を失わないよう先に CookieJar として扱う
    if isinstance(cookies, CookieJar):
        for cookie in cookies:
            jar.set_cookie(copy.copy(cookie))
        return
    if isinstance(cookies, Mapping):
        for key, value in cookies.items():
            jar.set(key, value, domain=COOKIE_DOMAIN, path='/')
        return
    for cookie in cookies:
        jar.set_cookie(copy.copy(cookie))
