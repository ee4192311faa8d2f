import copy
import json as jsonlib
from dataclasses import dataclass, field
from http.cookiejar import Cookie
from typing import Any, Mapping, Optional, Protocol, Union

from curl_cffi import requests as curl_requests


@dataclass
class TransportResponse:
    """
    トランスポートから返されるレスポンス
    tweepy.HTTPException にそのまま渡せるよう status_code / reason / text / json() を持つ
    """

    status_code: int
    reason: str = ''
    headers: Mapping[str, str] = field(default_factory=dict)
    text: str = ''
    url: str = ''
    # レスポンスの Set-Cookie から作られた Cookie (呼び出し元の CookieJar に取り込む)
    cookies: list[Cookie] = field(default_factory=list)

    def json(self) -> Any:
        return jsonlib.loads(self.text)


class Transport(Protocol):
    """HTTP リクエストを送信するだけの最小限のインターフェイス"""

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        params: Optional[Mapping[str, Any]] = None,
        data: Optional[Union[Mapping[str, str], str, bytes]] = None,
        json: Optional[Any] = None,
    ) -> TransportResponse:
        ...

    async def close(self) -> None:
        ...


class CurlTransport:
    """
    curl-cffi の非同期セッションを使うトランスポート
    TLS や HTTP/2 のフィンガープリントも Chrome に偽装される

    Cookie は呼び出し元の CookieJar で一元管理するため、セッション側には Cookie を残さない
    (ゲストとユーザーでセッションを使い回しても Cookie が混ざらないようにする)
    """

    def __init__(self, impersonate: str = 'chrome', timeout: float = 30.0, proxy: Optional[str] = None) -> None:
        self._session = curl_requests.AsyncSession(
            ## リダイレクトを追跡する
            allow_redirects=True,
            ## curl-cffi に実装されている中で一番新しい Chrome バージョンに偽装する
            impersonate=impersonate,  # type: ignore[arg-type]
            ## 可能な限り Chrome からのリクエストに偽装するため、明示的に HTTP/2 で接続する
            http_version='v2',  # type: ignore[arg-type]
            timeout=timeout,
            proxy=proxy,
        )

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        params: Optional[Mapping[str, Any]] = None,
        data: Optional[Union[Mapping[str, str], str, bytes]] = None,
        json: Optional[Any] = None,
    ) -> TransportResponse:
        response = await self._session.request(
            method.upper(),  # type: ignore[arg-type]
            url,
            headers=dict(headers),
            params=params,
            data=data,  # type: ignore[arg-type]
            json=json,
        )
        cookies = [copy.copy(cookie) for cookie in response.cookies.jar]
        self._session.cookies.clear()

        return TransportResponse(
            status_code=response.status_code,
            reason=response.reason or '',
            headers=dict(response.headers),
            text=response.text,
            url=str(response.url),
            cookies=cookies,
        )

    async def close(self) -> None:
        await self._session.close()
