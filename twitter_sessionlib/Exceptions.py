from typing import TYPE_CHECKING, Optional

import tweepy


if TYPE_CHECKING:
    from twitter_sessionlib.TwitterUserAuth import LoginSession


class TransportError(tweepy.TweepyException):
    """
    ネットワーク・DNS・TLS などの通信レベルのエラー
    このライブラリ側では再試行しないので、呼び出し元で再試行するかどうかを判断する
    """

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f'{operation} failed (transport error: {cause})')


class ProtocolError(tweepy.TweepyException):
    """API から想定外の形式のレスポンスが返ってきた"""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f'{operation} failed ({message})')


class AuthenticationError(tweepy.TweepyException):
    """認証情報が無効・セッション切れなど、現在の試行では回復できない認証エラー"""


class LoginError(AuthenticationError):
    """
    ログインフローのいずれかのステップで失敗した
    session には失敗時点の LoginSession が入る (step は常に LoginStep.FAILED)
    """

    def __init__(self, message: str, session: Optional['LoginSession'] = None) -> None:
        self.session = session
        super().__init__(message)


class InvalidCredentialsError(LoginError):
    """スクリーンネームまたはパスワードが間違っている"""


class EmailConfirmationRequiredError(LoginError):
    """メールアドレス (または電話番号) による本人確認を求められたが、メールアドレスが指定されていない"""


class TwoFactorCodeRequiredError(LoginError):
    """二要素認証のコードを求められたが、コードも TOTP シークレットも指定されていない"""


class TwoFactorCodeRejectedError(LoginError):
    """二要素認証のコードが受け付けられなかった"""


class LoginDeniedError(LoginError):
    """Twitter 側でログインが拒否された (DenyLoginSubtask)"""


# ブロックやレートリミットとして解釈できる HTTP エラー
# このライブラリは自動で分類しないので、呼び出し元でこれらを捕捉したら TwitterClient.rotate_fingerprint() を呼ぶことを推奨する
RateLimitOrBlockSignal = (tweepy.TooManyRequests, tweepy.Forbidden)
