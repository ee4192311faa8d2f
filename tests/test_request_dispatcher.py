import asyncio
import random

import pytest
import tweepy
from curl_cffi import CurlError

from conftest import NO_DELAY_CONFIG, FakeClock, FakeTransport, make_response
from twitter_sessionlib.BrowserFingerprint import AntiDetectionConfig
from twitter_sessionlib.BrowserFingerprintManager import BrowserFingerprintManager
from twitter_sessionlib.Cookies import COOKIE_DOMAIN, get_cookie_value
from twitter_sessionlib.Exceptions import ProtocolError, TransportError
from twitter_sessionlib.RequestDispatcher import ApiRequest, RequestApiResult, RequestDispatcher, RequestTransform
from twitter_sessionlib.Transport import TransportResponse
from twitter_sessionlib.TwitterAuth import TWITTER_WEB_APP_BEARER_TOKEN, TwitterGuestAuth
from twitter_sessionlib.XPFFHeaderGenerator import XPFFHeaderGenerator


API_URL = 'https://api.x.com/1.1/example.json'


def create_guest(dispatcher: RequestDispatcher, transport: FakeTransport) -> TwitterGuestAuth:
    transport.add('/1.1/guest/activate.json', make_response(body={'guest_token': '1234567890'}))
    return TwitterGuestAuth(dispatcher)


def test_dispatch_sets_auth_and_cookie_headers(dispatcher, transport):
    guest = create_guest(dispatcher, transport)
    guest.cookie_jar().set('ct0', 'csrf-token', domain=COOKIE_DOMAIN, path='/')
    transport.add('/1.1/example.json', make_response(body={'ok': True}))

    result = asyncio.run(dispatcher.dispatch(guest, ApiRequest(url=API_URL)))

    assert result.success is True
    assert result.value == {'ok': True}
    # ゲストトークンの取得が先に行われる
    assert [request['url'] for request in transport.requests] == [
        'https://api.x.com/1.1/guest/activate.json',
        API_URL,
    ]
    headers = transport.requests[1]['headers']
    assert headers['Authorization'] == TWITTER_WEB_APP_BEARER_TOKEN
    assert headers['X-Guest-Token'] == '1234567890'
    assert headers['X-Csrf-Token'] == 'csrf-token'
    assert 'gt=1234567890' in headers['Cookie']
    assert 'ct0=csrf-token' in headers['Cookie']
    assert headers['Host'] == 'api.x.com'


def test_dispatch_extra_headers_and_unauthenticated(dispatcher, transport):
    guest = TwitterGuestAuth(dispatcher)
    transport.add('/1.1/example.json', make_response(body=[]))

    request = ApiRequest(
        url=API_URL,
        method='POST',
        json={'a': 1},
        authenticate=False,
        extra_headers={'Content-Type': 'application/json'},
    )
    result = asyncio.run(dispatcher.dispatch(guest, request))

    assert result.unwrap() == []
    sent = transport.requests[0]
    assert sent['method'] == 'POST'
    assert sent['json'] == {'a': 1}
    assert 'Authorization' not in sent['headers']
    assert sent['headers']['Content-Type'] == 'application/json'
    assert guest.has_token() is False


def test_dispatch_merges_response_cookies(dispatcher, transport):
    guest = TwitterGuestAuth(dispatcher)
    guest.cookie_jar().set('old', '1', domain=COOKIE_DOMAIN, path='/')
    transport.add(
        '/1.1/example.json',
        make_response(body={}, cookies={'ct0': 'new-csrf', 'guest_id': 'v1%3A1'}, expired_cookies=('old',)),
    )

    asyncio.run(dispatcher.dispatch(guest, ApiRequest(url=API_URL, authenticate=False)))

    jar = guest.cookie_jar()
    assert get_cookie_value(jar, 'ct0') == 'new-csrf'
    assert get_cookie_value(jar, 'guest_id') == 'v1%3A1'
    assert get_cookie_value(jar, 'old') is None


@pytest.mark.parametrize(
    'status_code, exception_class',
    [
        (400, tweepy.BadRequest),
        (401, tweepy.Unauthorized),
        (403, tweepy.Forbidden),
        (404, tweepy.NotFound),
        (429, tweepy.TooManyRequests),
        (503, tweepy.TwitterServerError),
        (418, tweepy.HTTPException),
    ],
)
def test_dispatch_maps_http_errors(dispatcher, transport, status_code, exception_class):
    guest = TwitterGuestAuth(dispatcher)
    transport.add(
        '/1.1/example.json',
        make_response(status_code, body={'errors': [{'code': 88, 'message': 'Rate limit exceeded'}]}),
    )

    result = asyncio.run(dispatcher.dispatch(guest, ApiRequest(url=API_URL, authenticate=False)))

    assert result.success is False
    assert type(result.error) is exception_class
    assert result.error.api_codes == [88]
    assert result.response is not None
    with pytest.raises(exception_class):
        result.unwrap()


def test_dispatch_maps_transport_errors(dispatcher, transport):
    guest = TwitterGuestAuth(dispatcher)
    transport.add('/1.1/example.json', CurlError('connection reset'))

    result = asyncio.run(dispatcher.dispatch(guest, ApiRequest(url=API_URL, authenticate=False)))

    assert result.success is False
    assert isinstance(result.error, TransportError)
    assert result.error.operation == 'GET /1.1/example.json'
    assert result.response is None


def test_dispatch_maps_undecodable_body(dispatcher, transport):
    guest = TwitterGuestAuth(dispatcher)
    transport.add('/1.1/example.json', make_response(body='<html>not json</html>'))

    result = asyncio.run(dispatcher.dispatch(guest, ApiRequest(url=API_URL, authenticate=False)))

    assert isinstance(result.error, ProtocolError)


def test_dispatch_web_target_returns_text(dispatcher, transport):
    guest = TwitterGuestAuth(dispatcher)
    transport.add('https://x.com/home', make_response(body='<html></html>'))

    result = asyncio.run(
        dispatcher.dispatch(guest, ApiRequest(url='https://x.com/home', target='web', authenticate=False))
    )

    assert result.unwrap() == '<html></html>'
    headers = transport.requests[0]['headers']
    assert headers['Referer'] == 'https://x.com/home'
    assert headers['Host'] == 'x.com'


def test_dispatch_empty_body(dispatcher, transport):
    guest = TwitterGuestAuth(dispatcher)
    transport.add('/1.1/example.json', make_response(body=None))

    result = asyncio.run(dispatcher.dispatch(guest, ApiRequest(url=API_URL, authenticate=False)))

    assert result == RequestApiResult.ok(None, result.response)


def test_dispatch_xpff_header(transport):
    clock = FakeClock()
    config = AntiDetectionConfig(enable_request_delay=False, enable_header_randomization=False)
    manager = BrowserFingerprintManager(config=config, rng=random.Random(1), clock=clock)
    xpff = XPFFHeaderGenerator()
    dispatcher = RequestDispatcher(transport, manager, xpff_header_generator=xpff)
    guest = TwitterGuestAuth(dispatcher)
    guest.cookie_jar().set('guest_id', 'v1%3A1', domain=COOKIE_DOMAIN, path='/')
    transport.add('/1.1/example.json', make_response(body={}))

    asyncio.run(dispatcher.dispatch(guest, ApiRequest(url=API_URL, authenticate=False)))

    headers = transport.requests[0]['headers']
    assert 'v1%3A1' not in headers['X-XP-Forwarded-For']
    assert manager.current().user_agent in xpff.decrypt(headers['X-XP-Forwarded-For'], 'v1%3A1')


def test_dispatch_without_xpff_header(dispatcher, transport):
    assert dispatcher.config is NO_DELAY_CONFIG
    guest = TwitterGuestAuth(dispatcher)
    guest.cookie_jar().set('guest_id', 'v1%3A1', domain=COOKIE_DOMAIN, path='/')
    transport.add('/1.1/example.json', make_response(body={}))

    asyncio.run(dispatcher.dispatch(guest, ApiRequest(url=API_URL, authenticate=False)))

    assert 'X-XP-Forwarded-For' not in transport.requests[0]['headers']


def test_dispatch_transform_rewrites_request_and_response(transport):
    def rewrite_request(url, headers):
        headers['X-Proxy-Target'] = url
        return url.replace('https://api.x.com/', 'https://proxy.example/')

    def rewrite_response(response):
        return TransportResponse(status_code=response.status_code, text='{"proxied": true}', cookies=response.cookies)

    manager = BrowserFingerprintManager(config=NO_DELAY_CONFIG, rng=random.Random(1), clock=FakeClock())
    dispatcher = RequestDispatcher(
        transport,
        manager,
        config=NO_DELAY_CONFIG,
        transform=RequestTransform(request=rewrite_request, response=rewrite_response),
    )
    guest = TwitterGuestAuth(dispatcher)
    transport.add('/1.1/example.json', make_response(body={'ok': True}, cookies={'guest_id': 'v1%3A1'}))

    result = asyncio.run(dispatcher.dispatch(guest, ApiRequest(url=API_URL, authenticate=False)))

    sent = transport.requests[0]
    assert sent['url'] == 'https://proxy.example/1.1/example.json'
    assert sent['headers']['X-Proxy-Target'] == API_URL
    # Host ヘッダーは元の URL のまま
    assert sent['headers']['Host'] == 'api.x.com'
    assert result.value == {'proxied': True}
    # 書き換え後のレスポンスの Cookie が取り込まれる
    assert get_cookie_value(guest.cookie_jar(), 'guest_id') == 'v1%3A1'
