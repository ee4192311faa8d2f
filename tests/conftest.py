import json
import random
from typing import Any, Mapping, Optional, Union

import pytest
from requests.cookies import create_cookie

from twitter_sessionlib.BrowserFingerprint import AntiDetectionConfig
from twitter_sessionlib.BrowserFingerprintManager import BrowserFingerprintManager
from twitter_sessionlib.RequestDispatcher import RequestDispatcher
from twitter_sessionlib.Transport import TransportResponse


# テストでは待機やランダムなヘッダーを入れない
NO_DELAY_CONFIG = AntiDetectionConfig(
    enable_request_delay=False,
    enable_jitter=False,
    enable_header_randomization=False,
    enable_xpff_header=False,
)


class FakeClock:
    """ミリ秒単位で進めるだけの時計"""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeSleep:
    """待機した秒数を記録し、時計を進める"""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds * 1000)


def make_response(
    status_code: int = 200,
    body: Union[Mapping[str, Any], list[Any], str, None] = None,
    cookies: Optional[Mapping[str, str]] = None,
    expired_cookies: tuple[str, ...] = (),
) -> TransportResponse:
    if body is None:
        text = ''
    elif isinstance(body, str):
        text = body
    else:
        text = json.dumps(body)
    response_cookies = [
        create_cookie(name, value, domain='.x.com', path='/') for name, value in (cookies or {}).items()
    ]
    # Max-Age=0 で削除を指示された Cookie
    response_cookies += [create_cookie(name, '', domain='.x.com', path='/', expires=1) for name in expired_cookies]
    return TransportResponse(
        status_code=status_code,
        reason='OK' if status_code < 400 else 'Error',
        text=text,
        cookies=response_cookies,
    )


class FakeTransport:
    """
    送信されたリクエストを記録し、あらかじめ登録したレスポンスを返すトランスポート
    レスポンスは URL のパス部分ごとに先入れ先出しで返す
    """

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.responses: dict[str, list[Union[TransportResponse, Exception]]] = {}
        self.closed = False

    def add(self, path: str, response: Union[TransportResponse, Exception]) -> None:
        self.responses.setdefault(path, []).append(response)

    def requests_to(self, path: str) -> list[dict[str, Any]]:
        return [request for request in self.requests if request['url'].split('?')[0].endswith(path)]

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        params: Optional[Mapping[str, Any]] = None,
        data: Any = None,
        json: Any = None,
    ) -> TransportResponse:
        self.requests.append(
            {'method': method, 'url': url, 'headers': dict(headers), 'params': params, 'data': data, 'json': json}
        )
        for path, queue in self.responses.items():
            if url.endswith(path) and queue:
                response = queue.pop(0)
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f'unexpected request: {method} {url}')

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def dispatcher(transport: FakeTransport, rng: random.Random, clock: FakeClock) -> RequestDispatcher:
    manager = BrowserFingerprintManager(config=NO_DELAY_CONFIG, rng=rng, clock=clock, sleep=FakeSleep(clock))
    return RequestDispatcher(transport, manager, rng=rng)
