import logging
import time
from typing import Any, Callable, MutableMapping, Optional, Protocol, runtime_checkable

from requests.cookies import RequestsCookieJar

from twitter_sessionlib.BrowserHeaders import API_ORIGIN
from twitter_sessionlib.Cookies import COOKIE_DOMAIN, merge_cookies
from twitter_sessionlib.Exceptions import ProtocolError
from twitter_sessionlib.RequestDispatcher import ApiRequest, RequestDispatcher
from twitter_sessionlib.Transport import TransportResponse


logger = logging.getLogger(__name__)

# Twitter Web App (GraphQL API) の Bearer トークン
TWITTER_WEB_APP_BEARER_TOKEN = 'Bearer AAAAAAAAAAAAAAAAAAAAANRILgAAAAAAnNwIzUejRCOuH5E6I8xnZz4puTs%3D1Zv7ttfk8LF81IUq16cHjhLTvJu4FA33AGWWjCpTnA'

GUEST_ACTIVATE_URL = f'{API_ORIGIN}/1.1/guest/activate.json'


@runtime_checkable
class TwitterAuth(Protocol):
    """
    ゲスト・ユーザーどちらの認証情報も持つ共通のインターフェイス
    エンドポイントごとの処理はこのインターフェイスと RequestDispatcher だけに依存する
    """

    def has_token(self) -> bool:
        """利用可能なトークンを保持しているかどうか (有効性までは確認しない)"""
        ...

    async def is_logged_in(self) -> bool:
        """API に問い合わせて、実ユーザーとしてログインしているかを確認する"""
        ...

    async def me(self) -> Optional[dict[str, Any]]:
        ...

    def cookie_jar(self) -> RequestsCookieJar:
        ...

    def bearer_token(self) -> str:
        ...

    async def logout(self) -> None:
        ...

    async def install_to(self, headers: MutableMapping[str, str]) -> None:
        """リクエストヘッダーに認証情報をセットする"""
        ...

    def update_cookies(self, response: TransportResponse) -> None:
        """レスポンスで返ってきた Cookie を CookieJar に取り込む"""
        ...


class TwitterGuestAuth:
    """
    ゲストトークンを使う匿名セッション
    ゲストトークンは最初に必要になった時点で取得され、GUEST_TOKEN_TTL を過ぎると自動で取得し直される
    """

    # ゲストトークンの有効期限とみなす時間 (秒)
    GUEST_TOKEN_TTL = 3 * 60 * 60

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        bearer_token: str = TWITTER_WEB_APP_BEARER_TOKEN,
        cookie_jar: Optional[RequestsCookieJar] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        TwitterGuestAuth を初期化する
        この時点ではゲストトークンは取得しない (has_token() は False を返す)

        Args:
            dispatcher (RequestDispatcher): ゲストトークンの取得に使う RequestDispatcher
            bearer_token (str, optional): Bearer トークン. Defaults to TWITTER_WEB_APP_BEARER_TOKEN.
            cookie_jar (Optional[RequestsCookieJar], optional): 共有する CookieJar. Defaults to None (新しく作る).
            clock (Callable[[], float], optional): 現在時刻を秒で返す関数. Defaults to time.time.
        """

        self.dispatcher = dispatcher
        self._bearer_token = bearer_token
        self._jar = cookie_jar if cookie_jar is not None else RequestsCookieJar()
        self._clock = clock

        self.guest_token: Optional[str] = None
        self.guest_created_at: Optional[float] = None

    def has_token(self) -> bool:
        return self.guest_token is not None

    async def is_logged_in(self) -> bool:
        return False

    async def me(self) -> Optional[dict[str, Any]]:
        return None

    def cookie_jar(self) -> RequestsCookieJar:
        return self._jar

    def bearer_token(self) -> str:
        return self._bearer_token

    def delete_token(self) -> None:
        """ゲストトークンを破棄する (次のリクエスト時に取得し直される)"""

        self.guest_token = None
        self.guest_created_at = None

    def should_update(self) -> bool:
        if self.guest_token is None or self.guest_created_at is None:
            return True
        return self._clock() - self.guest_created_at > self.GUEST_TOKEN_TTL

    async def update_guest_token(self) -> str:
        """
        ゲストトークン (Cookie 内の "gt" 値) を取得し直す

        Returns:
            str: 取得されたゲストトークン

        Raises:
            tweepy.HTTPException: API がエラーを返した
            TransportError: 通信エラーが発生した
            ProtocolError: レスポンスにゲストトークンが含まれていなかった
        """

        result = await self.dispatcher.dispatch(
            self,
            ApiRequest(
                url=GUEST_ACTIVATE_URL,
                method='POST',
                authenticate=False,
                extra_headers={'Authorization': self._bearer_token},
                operation='guest token activation',
            ),
        )
        data = result.unwrap()
        guest_token = data.get('guest_token') if isinstance(data, dict) else None
        if not guest_token:
            raise ProtocolError('guest token activation', 'guest_token not found in response')

        self.guest_token = str(guest_token)
        self.guest_created_at = self._clock()
        self._jar.set('gt', self.guest_token, domain=COOKIE_DOMAIN, path='/')
        logger.debug('Updated guest token.')

        return self.guest_token

    async def install_to(self, headers: MutableMapping[str, str]) -> None:
        if self.should_update():
            await self.update_guest_token()
        assert self.guest_token is not None
        headers['Authorization'] = self._bearer_token
        headers['X-Guest-Token'] = self.guest_token

    def update_cookies(self, response: TransportResponse) -> None:
        merge_cookies(self._jar, response.cookies)

    async def logout(self) -> None:
        # ゲストにはサーバー側のセッションがないので、手元の状態を破棄するだけ
        self.delete_token()
        self._jar.clear()
