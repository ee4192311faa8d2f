import logging
import random
from typing import Any, Mapping, Optional

from requests.cookies import RequestsCookieJar
from requests.structures import CaseInsensitiveDict

from twitter_sessionlib.BrowserFingerprint import AntiDetectionConfig, BrowserFingerprint
from twitter_sessionlib.BrowserFingerprintManager import BrowserFingerprintManager
from twitter_sessionlib.Cookies import CookiesLike, copy_cookie_jar, load_cookies
from twitter_sessionlib.RequestDispatcher import ApiRequest, RequestDispatcher, RequestTransform
from twitter_sessionlib.Transport import CurlTransport, Transport
from twitter_sessionlib.TwitterAuth import TWITTER_WEB_APP_BEARER_TOKEN, TwitterAuth, TwitterGuestAuth
from twitter_sessionlib.TwitterUserAuth import TwitterUserAuth


logger = logging.getLogger(__name__)


class TwitterClient:
    """
    Twitter の非公開 API にアクセスするためのクライアント
    通常のエンドポイント用 (general_auth) とトレンド用 (trends_auth) の 2 つの認証情報を持ち、
    初期状態ではそれぞれ独立したゲストセッション、ログイン後は同じユーザーセッションを指す

    ゲストトークンの取得やログインには時間がかかるため、クライアントはできるだけ使い回すことを推奨する
    """

    def __init__(
        self,
        bearer_token: str = TWITTER_WEB_APP_BEARER_TOKEN,
        transport: Optional[Transport] = None,
        fingerprint_manager: Optional[BrowserFingerprintManager] = None,
        config: Optional[AntiDetectionConfig] = None,
        rng: Optional[random.Random] = None,
        transform: Optional[RequestTransform] = None,
    ) -> None:
        """
        TwitterClient を初期化する
        この時点ではまだ API へのリクエストは行わない

        Args:
            bearer_token (str, optional): Bearer トークン. Defaults to TWITTER_WEB_APP_BEARER_TOKEN.
            transport (Optional[Transport], optional): HTTP リクエストの送信に使うトランスポート. Defaults to None (CurlTransport).
            fingerprint_manager (Optional[BrowserFingerprintManager], optional): 複数のクライアントで共有する場合に渡す. Defaults to None (クライアントごとに作る).
            config (Optional[AntiDetectionConfig], optional): フィンガープリントやリクエスト間隔のパラメーター. Defaults to None.
            rng (Optional[random.Random], optional): 乱数源. Defaults to None.
            transform (Optional[RequestTransform], optional): 送信前のリクエストと受信したレスポンスを書き換えるフック (別ホスト経由のプロキシなど). Defaults to None.
        """

        self._bearer_token = bearer_token
        self.transport = transport if transport is not None else CurlTransport()
        self.fingerprint_manager = fingerprint_manager or BrowserFingerprintManager(config=config, rng=rng)
        self.dispatcher = RequestDispatcher(
            self.transport,
            self.fingerprint_manager,
            config=config,
            rng=rng,
            transform=transform,
        )

        self.general_auth: TwitterAuth
        self.trends_auth: TwitterAuth
        self._use_guest_auth()

    def _use_guest_auth(self) -> None:
        # 生成時とログアウト時に、両方のスロットを新しいゲストセッションに差し替える
        self.general_auth = TwitterGuestAuth(self.dispatcher, self._bearer_token)
        self.trends_auth = TwitterGuestAuth(self.dispatcher, self._bearer_token)

    def _use_user_auth(self, user_auth: TwitterUserAuth) -> None:
        # 両方のスロットが同じインスタンス (同じ CookieJar) を指す
        self.general_auth = user_auth
        self.trends_auth = user_auth

    def has_guest_token(self) -> bool:
        """
        いずれかのスロットがトークンを保持しているかを返す (トークンが有効かどうかは確認しない)

        Returns:
            bool: トークンを保持していれば True
        """

        return self.general_auth.has_token() or self.trends_auth.has_token()

    async def is_logged_in(self) -> bool:
        """
        両方のスロットで実ユーザーとしてログインしているかを API に問い合わせて確認する

        Returns:
            bool: ログインしていれば True
        """

        return await self.general_auth.is_logged_in() and await self.trends_auth.is_logged_in()

    async def me(self) -> Optional[dict[str, Any]]:
        """
        ログイン中のユーザーの情報 (account/verify_credentials のレスポンス) を取得する

        Returns:
            Optional[dict[str, Any]]: ユーザー情報 (ゲストの場合は None)
        """

        return await self.general_auth.me()

    async def login(
        self,
        username: str,
        password: str,
        email: Optional[str] = None,
        two_factor_secret: Optional[str] = None,
        app_key: Optional[str] = None,
        app_secret: Optional[str] = None,
        access_token: Optional[str] = None,
        access_secret: Optional[str] = None,
        two_factor_code: Optional[str] = None,
    ) -> None:
        """
        実アカウントでログインする
        ログインに成功した場合のみ両方のスロットをユーザーセッションに差し替える
        失敗した場合は例外を送出し、それまでのセッションはそのまま残る

        Args:
            username (str): スクリーンネーム (@は含まない)
            password (str): パスワード
            email (Optional[str], optional): 本人確認を求められた場合に入力するメールアドレス. Defaults to None.
            two_factor_secret (Optional[str], optional): 二要素認証の TOTP シークレット. Defaults to None.
            app_key (Optional[str], optional): OAuth 1.0a のコンシューマーキー. Defaults to None.
            app_secret (Optional[str], optional): OAuth 1.0a のコンシューマーシークレット. Defaults to None.
            access_token (Optional[str], optional): OAuth 1.0a のアクセストークン. Defaults to None.
            access_secret (Optional[str], optional): OAuth 1.0a のアクセストークンシークレット. Defaults to None.
            two_factor_code (Optional[str], optional): 二要素認証のワンタイムコード. Defaults to None.

        Raises:
            ValueError: 引数が不正
            LoginError: ログインフローが失敗した (詳細はサブクラスを参照)
            tweepy.HTTPException: API がエラーを返した
            TransportError: 通信エラーが発生した
        """

        user_auth = TwitterUserAuth(self.dispatcher, self._bearer_token)
        await user_auth.login(
            username,
            password,
            email=email,
            two_factor_secret=two_factor_secret,
            app_key=app_key,
            app_secret=app_secret,
            access_token=access_token,
            access_secret=access_secret,
            two_factor_code=two_factor_code,
        )
        self._use_user_auth(user_auth)

    async def logout(self) -> None:
        """
        ログアウトし、両方のスロットを新しいゲストセッションに戻す
        ログアウト API がエラーを返した場合も、ゲストセッションに戻した上で例外を送出する
        """

        try:
            await self.general_auth.logout()
            # ログイン後は両方のスロットが同じインスタンスなので、二重にログアウトしない
            if self.trends_auth is not self.general_auth:
                await self.trends_auth.logout()
        finally:
            self._use_guest_auth()

    def get_cookies(self) -> RequestsCookieJar:
        """
        現在のセッションの Cookie を取得する

        Returns:
            RequestsCookieJar: Cookie のコピー (変更しても現在のセッションには影響しない)
        """

        return copy_cookie_jar(self.trends_auth.cookie_jar())

    def get_cookies_as_dict(self) -> dict[str, str]:
        """
        現在のセッションの Cookie を dict として取得する
        JSON ファイルなどに保存しておき、次回 set_cookies() に渡すことで再ログインせずにセッションを復元できる

        Returns:
            dict[str, str]: Cookie の名前と値の dict
        """

        cookies: dict[str, str] = {}
        for cookie in self.trends_auth.cookie_jar():
            if cookie.value is not None:
                cookies[cookie.name] = cookie.value
        return cookies

    def set_cookies(self, cookies: CookiesLike) -> None:
        """
        保存しておいた Cookie からユーザーセッションを復元する
        ログインフローは実行しないため、Cookie が有効かどうかは is_logged_in() で確認すること

        Args:
            cookies (CookiesLike): RequestsCookieJar・dict・Cookie のリストのいずれか
        """

        user_auth = TwitterUserAuth(self.dispatcher, self._bearer_token)
        load_cookies(user_auth.cookie_jar(), cookies)
        self._use_user_auth(user_auth)

    def clear_cookies(self) -> None:
        """現在のセッションの Cookie をすべて削除する (スロットは差し替えない)"""

        self.general_auth.cookie_jar().clear()
        self.trends_auth.cookie_jar().clear()

    async def get_twitter_api_headers(self, base_headers: Optional[Mapping[str, str]] = None) -> 'CaseInsensitiveDict[str]':
        """
        API リクエスト用のブラウザらしいヘッダーを組み立てる
        リクエスト間隔の待機も行われるので、自前でリクエストを送る場合も 1 リクエストごとに呼び出すこと

        Args:
            base_headers (Optional[Mapping[str, str]], optional): 先頭に入れておくヘッダー. Defaults to None.

        Returns:
            CaseInsensitiveDict[str]: 順序付きのヘッダー
        """

        return await self.dispatcher.get_twitter_api_headers(base_headers)

    async def get_twitter_web_headers(self, base_headers: Optional[Mapping[str, str]] = None) -> 'CaseInsensitiveDict[str]':
        return await self.dispatcher.get_twitter_web_headers(base_headers)

    def rotate_fingerprint(self) -> None:
        """
        フィンガープリントを強制的にローテーションする
        レートリミットやブロックを検知した際に呼び出すことを想定している (RateLimitOrBlockSignal を参照)
        """

        fingerprint = self.fingerprint_manager.rotate()
        logger.debug('Fingerprint rotated by caller (user agent: %s).', fingerprint.user_agent)

    def get_current_fingerprint_info(self) -> BrowserFingerprint:
        """
        現在のフィンガープリントを取得する (デバッグ用)
        同じフィンガープリントでのリクエスト数は fingerprint_manager.request_count で確認できる

        Returns:
            BrowserFingerprint: 現在のフィンガープリント (ローテーション間隔を過ぎていればここで再生成される)
        """

        return self.fingerprint_manager.current()

    async def request(self, request: ApiRequest, trends: bool = False) -> Any:
        """
        現在のセッションで API にリクエストを送る
        エンドポイントごとの処理はこのメソッドの上に実装する

        Args:
            request (ApiRequest): リクエストの内容
            trends (bool, optional): トレンド用のスロットを使うかどうか. Defaults to False.

        Returns:
            Any: デコードされたレスポンス

        Raises:
            tweepy.HTTPException: API がエラーを返した
            TransportError: 通信エラーが発生した
            ProtocolError: レスポンスが想定外の形式だった
        """

        auth = self.trends_auth if trends is True else self.general_auth
        result = await self.dispatcher.dispatch(auth, request)
        return result.unwrap()

    async def close(self) -> None:
        await self.transport.close()

    async def __aenter__(self) -> 'TwitterClient':
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
