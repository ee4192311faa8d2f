import asyncio
import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, Literal, Mapping, Optional, TypeVar, Union
from urllib.parse import urlparse

import tweepy
from curl_cffi import CurlError
from requests.structures import CaseInsensitiveDict

from twitter_sessionlib.BrowserFingerprint import AntiDetectionConfig
from twitter_sessionlib.BrowserFingerprintManager import BrowserFingerprintManager
from twitter_sessionlib.BrowserHeaders import build_twitter_api_headers, build_twitter_web_headers
from twitter_sessionlib.Cookies import build_cookie_header, get_cookie_value
from twitter_sessionlib.Exceptions import ProtocolError, TransportError
from twitter_sessionlib.Transport import Transport, TransportResponse
from twitter_sessionlib.XPFFHeaderGenerator import XPFFHeaderGenerator


if TYPE_CHECKING:
    from twitter_sessionlib.TwitterAuth import TwitterAuth


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class ApiRequest:
    """RequestDispatcher に渡すリクエストの内容"""

    url: str
    method: str = 'GET'
    params: Optional[Mapping[str, Any]] = None
    json: Optional[Any] = None
    data: Optional[Union[Mapping[str, str], str, bytes]] = None
    # フィンガープリント由来のヘッダーより前に入れておくヘッダー
    headers: Optional[Mapping[str, str]] = None
    # フィンガープリント由来のヘッダーと認証情報の後に追加するヘッダー (Content-Type など)
    extra_headers: Optional[Mapping[str, str]] = None
    # api: API 用ヘッダー / web: Web ページ取得用ヘッダー (レスポンスは JSON として解釈しない)
    target: Literal['api', 'web'] = 'api'
    # False の場合は認証情報 (Bearer トークンなど) を付与しない (Cookie は常に付与する)
    authenticate: bool = True
    # エラーメッセージに使う操作名 (省略時は "METHOD /path")
    operation: Optional[str] = None

    @property
    def operation_name(self) -> str:
        return self.operation or f'{self.method.upper()} {urlparse(self.url).path}'


@dataclass
class RequestTransform:
    """
    送信直前のリクエストと受信直後のレスポンスを書き換えるフック
    別ホストを経由してプロキシする場合などに使う
    """

    # URL と組み立て済みのヘッダーを受け取り、実際に送信する URL を返す (ヘッダーはその場で書き換えてよい)
    request: Optional[Callable[[str, 'CaseInsensitiveDict[str]'], str]] = None
    # 受信したレスポンスを受け取り、Cookie の取り込みやエラー判定に使うレスポンスを返す
    response: Optional[Callable[[TransportResponse], TransportResponse]] = None


@dataclass(frozen=True)
class RequestApiResult(Generic[T]):
    """
    RequestDispatcher.dispatch() の結果
    成功時は value に、失敗時は error に値が入る (レスポンスを受け取れていれば response も入る)
    """

    success: bool
    value: Optional[T] = None
    error: Optional[Exception] = None
    response: Optional[TransportResponse] = None

    @classmethod
    def ok(cls, value: T, response: Optional[TransportResponse] = None) -> 'RequestApiResult[T]':
        return cls(success=True, value=value, response=response)

    @classmethod
    def fail(cls, error: Exception, response: Optional[TransportResponse] = None) -> 'RequestApiResult[T]':
        return cls(success=False, error=error, response=response)

    def unwrap(self) -> T:
        """
        成功していれば値を返し、失敗していればエラーを送出する

        Returns:
            T: レスポンスの値

        Raises:
            Exception: dispatch() 時に発生したエラー
        """

        if self.success is False:
            assert self.error is not None
            raise self.error
        return self.value  # type: ignore[return-value]


def get_http_exception(response: TransportResponse) -> tweepy.HTTPException:
    """
    ステータスコードと一致する tweepy.HTTPException のサブクラスのインスタンスを取得する

    Args:
        response (TransportResponse): エラーレスポンス

    Returns:
        tweepy.HTTPException: 例外
    """

    try:
        response_json = response.json()
    except ValueError:
        response_json = {}
    if not isinstance(response_json, dict):
        response_json = {}

    if response.status_code == 400:
        return tweepy.BadRequest(response, response_json=response_json)
    elif response.status_code == 401:
        return tweepy.Unauthorized(response, response_json=response_json)
    elif response.status_code == 403:
        return tweepy.Forbidden(response, response_json=response_json)
    elif response.status_code == 404:
        return tweepy.NotFound(response, response_json=response_json)
    elif response.status_code == 429:
        return tweepy.TooManyRequests(response, response_json=response_json)
    elif 500 <= response.status_code <= 599:
        return tweepy.TwitterServerError(response, response_json=response_json)
    else:
        return tweepy.HTTPException(response, response_json=response_json)


class RequestDispatcher:
    """
    フィンガープリント由来のヘッダーと認証情報を組み合わせてリクエストを送信し、結果を RequestApiResult にまとめる
    認証エラーを受け取っても別の認証情報での再試行は行わない (再ログインするかどうかは呼び出し元が判断する)
    """

    def __init__(
        self,
        transport: Transport,
        fingerprint_manager: BrowserFingerprintManager,
        config: Optional[AntiDetectionConfig] = None,
        rng: Optional[random.Random] = None,
        xpff_header_generator: Optional[XPFFHeaderGenerator] = None,
        transform: Optional[RequestTransform] = None,
    ) -> None:
        self.transport = transport
        self.fingerprint_manager = fingerprint_manager
        self.config = config or fingerprint_manager.config
        self._rng = rng or random.Random()
        self._xpff_header_generator = xpff_header_generator or XPFFHeaderGenerator()
        self.transform = transform or RequestTransform()

    async def get_twitter_api_headers(self, base_headers: Optional[Mapping[str, str]] = None) -> 'CaseInsensitiveDict[str]':
        """
        リクエスト間隔の待機を行った上で、API リクエスト用のヘッダーを組み立てる

        Args:
            base_headers (Optional[Mapping[str, str]], optional): 先頭に入れておくヘッダー. Defaults to None.

        Returns:
            CaseInsensitiveDict[str]: 順序付きのヘッダー
        """

        await self.fingerprint_manager.await_next_slot()
        fingerprint = self.fingerprint_manager.current()
        return build_twitter_api_headers(fingerprint, base_headers, self._rng, self.config)

    async def get_twitter_web_headers(self, base_headers: Optional[Mapping[str, str]] = None) -> 'CaseInsensitiveDict[str]':
        """
        リクエスト間隔の待機を行った上で、Web ページ取得用のヘッダーを組み立てる

        Args:
            base_headers (Optional[Mapping[str, str]], optional): 先頭に入れておくヘッダー. Defaults to None.

        Returns:
            CaseInsensitiveDict[str]: 順序付きのヘッダー
        """

        await self.fingerprint_manager.await_next_slot()
        fingerprint = self.fingerprint_manager.current()
        return build_twitter_web_headers(fingerprint, base_headers, self._rng, self.config)

    async def dispatch(self, auth: 'TwitterAuth', request: ApiRequest) -> RequestApiResult[Any]:
        """
        リクエストを送信する
        待機 (とリクエストカウンターの更新) はネットワークリクエストの開始前に完了する

        Args:
            auth (TwitterAuth): リクエストに使う認証情報
            request (ApiRequest): リクエストの内容

        Returns:
            RequestApiResult[Any]: API の場合はデコードした JSON、Web の場合は HTML を値に持つ結果
        """

        operation = request.operation_name

        if request.target == 'web':
            headers = await self.get_twitter_web_headers(request.headers)
        else:
            headers = await self.get_twitter_api_headers(request.headers)
        headers['Host'] = urlparse(request.url).netloc

        if request.authenticate is True:
            try:
                await auth.install_to(headers)
            except tweepy.TweepyException as ex:
                return RequestApiResult.fail(ex)

        # 現在のログインセッションの Cookie と、Cookie の "ct0" 値 (CSRF トークン) をセット
        jar = auth.cookie_jar()
        cookie_header = build_cookie_header(jar, request.url)
        if cookie_header:
            headers['Cookie'] = cookie_header
        csrf_token = get_cookie_value(jar, 'ct0', request.url)
        if csrf_token:
            headers['X-Csrf-Token'] = csrf_token

        # API にリクエストする際は guest_id (ゲストトークンとは異なる) から X-XP-Forwarded-For ヘッダーを生成して付与する
        guest_id = get_cookie_value(jar, 'guest_id', request.url)
        if self.config.enable_xpff_header is True and request.target == 'api' and guest_id:
            headers['X-XP-Forwarded-For'] = self._xpff_header_generator.generate(headers['User-Agent'], guest_id)

        if request.extra_headers:
            headers.update(request.extra_headers)

        url = request.url
        if self.transform.request is not None:
            url = self.transform.request(url, headers)

        logger.debug('Sending %s.', operation)
        try:
            response = await self.transport.send(
                request.method,
                url,
                headers=headers,
                params=request.params,
                data=request.data,
                json=request.json,
            )
        except (CurlError, OSError, asyncio.TimeoutError) as ex:
            logger.debug('%s failed with a transport error: %s', operation, ex)
            return RequestApiResult.fail(TransportError(operation, ex))

        if self.transform.response is not None:
            response = self.transform.response(response)

        # レスポンスで返ってきた Cookie (更新された ct0 など) を取り込む
        auth.update_cookies(response)

        if response.status_code >= 400:
            logger.debug('%s failed with HTTP %d.', operation, response.status_code)
            return RequestApiResult.fail(get_http_exception(response), response)

        if request.target == 'web':
            return RequestApiResult.ok(response.text, response)
        if response.text.strip() == '':
            return RequestApiResult.ok(None, response)
        try:
            return RequestApiResult.ok(response.json(), response)
        except ValueError:
            return RequestApiResult.fail(ProtocolError(operation, 'failed to decode JSON response'), response)
