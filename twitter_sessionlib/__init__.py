from twitter_sessionlib.__about__ import __version__
from twitter_sessionlib.BrowserFingerprint import AntiDetectionConfig, BrowserFingerprint, generate_browser_fingerprint
from twitter_sessionlib.BrowserFingerprintManager import BrowserFingerprintManager
from twitter_sessionlib.BrowserHeaders import (
    apply_advanced_browser_headers,
    build_twitter_api_headers,
    build_twitter_web_headers,
    generate_random_ip,
)
from twitter_sessionlib.Exceptions import (
    AuthenticationError,
    EmailConfirmationRequiredError,
    InvalidCredentialsError,
    LoginDeniedError,
    LoginError,
    ProtocolError,
    RateLimitOrBlockSignal,
    TransportError,
    TwoFactorCodeRejectedError,
    TwoFactorCodeRequiredError,
)
from twitter_sessionlib.RequestDispatcher import ApiRequest, RequestApiResult, RequestDispatcher, RequestTransform
from twitter_sessionlib.Transport import CurlTransport, Transport, TransportResponse
from twitter_sessionlib.TwitterAuth import TWITTER_WEB_APP_BEARER_TOKEN, TwitterAuth, TwitterGuestAuth
from twitter_sessionlib.TwitterClient import TwitterClient
from twitter_sessionlib.TwitterUserAuth import LoginSession, LoginStep, TwitterUserAuth
from twitter_sessionlib.XPFFHeaderGenerator import XPFFHeaderGenerator
