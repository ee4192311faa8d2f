import enum
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, MutableMapping, Optional

import pyotp
import tweepy
from requests.cookies import RequestsCookieJar

from twitter_sessionlib.BrowserHeaders import API_ORIGIN, WEB_ORIGIN
from twitter_sessionlib.Cookies import COOKIE_DOMAIN, get_cookie_value, merge_cookies
from twitter_sessionlib.Exceptions import (
    EmailConfirmationRequiredError,
    InvalidCredentialsError,
    LoginDeniedError,
    LoginError,
    ProtocolError,
    TwoFactorCodeRejectedError,
    TwoFactorCodeRequiredError,
)
from twitter_sessionlib.RequestDispatcher import ApiRequest, RequestApiResult, RequestDispatcher
from twitter_sessionlib.Transport import TransportResponse
from twitter_sessionlib.TwitterAuth import TWITTER_WEB_APP_BEARER_TOKEN, TwitterGuestAuth


logger = logging.getLogger(__name__)

LOGIN_FLOW_URL = f'{API_ORIGIN}/1.1/onboarding/task.json'
LOGOUT_URL = f'{API_ORIGIN}/1.1/account/logout.json'
VERIFY_CREDENTIALS_URL = f'{API_ORIGIN}/1.1/account/verify_credentials.json'

# ログインフローの開始時に送る、クライアントが対応しているサブタスクのバージョン
LOGIN_SUBTASK_VERSIONS = {
    'action_list': 2,
    'alert_dialog': 1,
    'app_download_cta': 1,
    'check_logged_in_account': 1,
    'choice_selection': 3,
    'contacts_live_sync_permission_prompt': 0,
    'cta': 7,
    'email_verification': 2,
    'end_flow': 1,
    'enter_date': 1,
    'enter_email': 2,
    'enter_password': 5,
    'enter_phone': 2,
    'enter_recaptcha': 1,
    'enter_text': 5,
    'enter_username': 2,
    'generic_urt': 3,
    'in_app_notification': 1,
    'interest_picker': 3,
    'js_instrumentation': 1,
    'menu_dialog': 1,
    'notifications_permission_prompt': 2,
    'open_account': 2,
    'open_home_timeline': 1,
    'open_link': 1,
    'phone_verification': 4,
    'privacy_options': 1,
    'security_key': 3,
    'select_avatar': 4,
    'select_banner': 2,
    'settings_list': 7,
    'show_code': 1,
    'sign_up': 2,
    'sign_up_review': 4,
    'tweet_selection_urt': 1,
    'update_users': 1,
    'upload_media': 1,
    'user_recommendations_list': 4,
    'user_recommendations_urt': 1,
    'wait_spinner': 3,
    'web_modal': 1,
}

# スクリーンネームまたはパスワードが間違っている場合に返されるエラーコード
INVALID_CREDENTIALS_ERROR_CODES = {32, 399}


class LoginStep(enum.Enum):
    START = 'start'
    AWAIT_EMAIL = 'await_email'
    AWAIT_TWO_FACTOR = 'await_two_factor'
    SUCCESS = 'success'
    FAILED = 'failed'


@dataclass
class LoginSession:
    """ログインフローの実行中だけ存在する状態"""

    username: str
    password: str = field(repr=False)
    email: Optional[str] = None
    two_factor_secret: Optional[str] = field(default=None, repr=False)
    two_factor_code: Optional[str] = field(default=None, repr=False)
    step: LoginStep = LoginStep.START
    flow_token: Optional[str] = field(default=None, repr=False)
    # 処理したサブタスクの ID (デバッグ用)
    subtask_history: list[str] = field(default_factory=list)
    # 失敗した時点のステップ
    failed_at: Optional[LoginStep] = None

    def fail(self) -> None:
        if self.step is not LoginStep.FAILED:
            self.failed_at = self.step
            self.step = LoginStep.FAILED


class TwitterUserAuth:
    """
    実アカウントでログインしたセッション
    Cookie (auth_token と ct0) で認証するため、login() でログインフローを実行するか、
    以前ログインした際に保存しておいた Cookie を CookieJar に読み込んで使う

    ログインフローの途中ではゲストトークンも必要になるため、同じ CookieJar を共有する TwitterGuestAuth を内部に持つ
    """

    # 二要素認証のコードを TOTP シークレットから生成する場合の最大試行回数
    TWO_FACTOR_MAX_ATTEMPTS = 3
    # 1 回のログインフローで処理するサブタスクの最大数
    LOGIN_MAX_SUBTASKS = 20
    # 同じサブタスクを処理する最大回数
    LOGIN_MAX_SUBTASK_REPEATS = 3

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        bearer_token: str = TWITTER_WEB_APP_BEARER_TOKEN,
        cookie_jar: Optional[RequestsCookieJar] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.dispatcher = dispatcher
        self._bearer_token = bearer_token
        self._jar = cookie_jar if cookie_jar is not None else RequestsCookieJar()
        self._clock = clock
        self._guest_auth = TwitterGuestAuth(dispatcher, bearer_token, cookie_jar=self._jar, clock=clock)

        # account/verify_credentials で取得したユーザー情報
        self.user_profile: Optional[dict[str, Any]] = None
        # 直近のログインフローの状態
        self.login_session: Optional[LoginSession] = None

        # OAuth 1.0a の署名付きリクエストが必要なエンドポイント向けの認証情報
        self.oauth1_auth: Optional[tweepy.OAuth1UserHandler] = None
        self.v2_client: Optional[tweepy.Client] = None

    def has_token(self) -> bool:
        return self._guest_auth.has_token() or get_cookie_value(self._jar, 'auth_token') is not None

    def cookie_jar(self) -> RequestsCookieJar:
        return self._jar

    def bearer_token(self) -> str:
        return self._bearer_token

    async def is_logged_in(self) -> bool:
        """
        account/verify_credentials を呼び出し、現在の Cookie で実ユーザーとして認証されているかを確認する
        成功した場合は取得したユーザー情報を me() で返せるようにキャッシュする

        Returns:
            bool: ログインしていれば True

        Raises:
            TransportError: 通信エラーが発生した
            tweepy.HTTPException: 認証エラー以外の理由で API がエラーを返した
        """

        result = await self.dispatcher.dispatch(
            self,
            ApiRequest(url=VERIFY_CREDENTIALS_URL, operation='credential verification'),
        )
        if result.success is False:
            # 認証エラーは「ログインしていない」とみなす
            if isinstance(result.error, (tweepy.Unauthorized, tweepy.Forbidden)):
                return False
            result.unwrap()

        verify = result.value
        if not isinstance(verify, dict):
            raise ProtocolError('credential verification', 'unexpected response shape')
        if verify.get('errors'):
            return False

        self.user_profile = verify
        return True

    async def me(self) -> Optional[dict[str, Any]]:
        if self.user_profile is None:
            await self.is_logged_in()
        return self.user_profile

    async def install_to(self, headers: MutableMapping[str, str]) -> None:
        headers['Authorization'] = self._bearer_token
        if get_cookie_value(self._jar, 'auth_token') is not None:
            headers['X-Twitter-Auth-Type'] = 'OAuth2Session'
            return
        # ログインフローの途中 (まだ auth_token がない) はゲストトークンで認証する
        if self._guest_auth.should_update():
            await self._guest_auth.update_guest_token()
        assert self._guest_auth.guest_token is not None
        headers['X-Guest-Token'] = self._guest_auth.guest_token

    def update_cookies(self, response: TransportResponse) -> None:
        merge_cookies(self._jar, response.cookies)

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
        スクリーンネームとパスワードを使ってログインフローを実行する
        メールアドレスでの本人確認や二要素認証を求められた場合は、指定された email / two_factor_secret / two_factor_code を使う

        Args:
            username (str): スクリーンネーム (@は含まない)
            password (str): パスワード
            email (Optional[str], optional): 本人確認を求められた場合に入力するメールアドレス. Defaults to None.
            two_factor_secret (Optional[str], optional): 二要素認証の TOTP シークレット. Defaults to None.
            app_key (Optional[str], optional): OAuth 1.0a のコンシューマーキー. Defaults to None.
            app_secret (Optional[str], optional): OAuth 1.0a のコンシューマーシークレット. Defaults to None.
            access_token (Optional[str], optional): OAuth 1.0a のアクセストークン. Defaults to None.
            access_secret (Optional[str], optional): OAuth 1.0a のアクセストークンシークレット. Defaults to None.
            two_factor_code (Optional[str], optional): 二要素認証のワンタイムコード (two_factor_secret より優先). Defaults to None.

        Raises:
            ValueError: スクリーンネームかパスワードが空文字列、または OAuth 1.0a の認証情報が一部しか指定されていない
            InvalidCredentialsError: スクリーンネームまたはパスワードが間違っている
            EmailConfirmationRequiredError: メールアドレスでの本人確認が必要だが、email が指定されていない
            TwoFactorCodeRequiredError: 二要素認証が必要だが、コードもシークレットも指定されていない
            TwoFactorCodeRejectedError: 二要素認証のコードが受け付けられなかった
            LoginDeniedError: Twitter 側でログインが拒否された
            LoginError: その他の理由でログインフローが失敗した
            tweepy.HTTPException: レートリミットやサーバーエラーでログインに失敗した
            TransportError: 通信エラーが発生した
        """

        if username == '':
            raise ValueError('username must not be empty string.')
        if password == '':
            raise ValueError('password must not be empty string.')

        oauth1_credentials = (app_key, app_secret, access_token, access_secret)
        if any(value is not None for value in oauth1_credentials) and not all(oauth1_credentials):
            raise ValueError('app_key, app_secret, access_token and access_secret must be specified together.')

        session = LoginSession(
            username=username,
            password=password,
            email=email,
            two_factor_secret=two_factor_secret,
            two_factor_code=two_factor_code,
        )
        self.login_session = session

        try:
            await self._run_login_flow(session)
        except LoginError as ex:
            session.fail()
            ex.session = session
            logger.debug('Login failed at %s: %s', session.failed_at, ex)
            raise
        except tweepy.TweepyException:
            session.fail()
            raise

        if all(oauth1_credentials):
            self.oauth1_auth = tweepy.OAuth1UserHandler(app_key, app_secret, access_token, access_secret)
            self.v2_client = tweepy.Client(
                consumer_key=app_key,
                consumer_secret=app_secret,
                access_token=access_token,
                access_token_secret=access_secret,
            )

    async def logout(self) -> None:
        """
        ログアウト API を呼び出して Twitter 側のセッションを切断し、手元のトークンと Cookie を破棄する
        単に Cookie を削除するだけだと Twitter にセッションが残り続けてしまうため、今後ログインしない場合は明示的に呼び出すこと
        ログアウト API がエラーを返した場合も、手元の状態は破棄した上で例外を送出する

        Raises:
            tweepy.HTTPException: サーバーエラーなどの問題でログアウトに失敗した
            TransportError: 通信エラーが発生した
            ProtocolError: ログアウト API のレスポンスが想定外だった
        """

        try:
            if get_cookie_value(self._jar, 'auth_token') is None:
                return
            result = await self.dispatcher.dispatch(
                self,
                ApiRequest(
                    url=LOGOUT_URL,
                    method='POST',
                    data={'redirectAfterLogout': f'{WEB_ORIGIN}/account/switch'},
                    extra_headers={'Content-Type': 'application/x-www-form-urlencoded'},
                    operation='logout',
                ),
            )
            data = result.unwrap()
            status = data.get('status') if isinstance(data, dict) else None
            if status != 'ok':
                raise ProtocolError('logout', f'unexpected status: {status}')
            logger.debug('Logged out.')
        finally:
            self._guest_auth.delete_token()
            self._jar.clear()
            self.user_profile = None

    async def _run_login_flow(self, session: LoginSession) -> None:
        # 前のセッションの Cookie が残っていると失敗しやすいので、まっさらな状態から始める
        self._jar.clear()
        self._guest_auth.delete_token()
        await self._guest_auth.update_guest_token()

        # ct0 (CSRF トークン) はログイン完了まではクライアント側で生成したものを使う
        self._jar.set('ct0', secrets.token_hex(16), domain=COOKIE_DOMAIN, path='/')

        data = await self._execute_flow_task(
            session,
            {
                'input_flow_data': {
                    'flow_context': {
                        'debug_overrides': {},
                        'start_location': {'location': 'splash_screen'},
                    }
                },
                'subtask_versions': LOGIN_SUBTASK_VERSIONS,
            },
            params={'flow_name': 'login'},
        )

        while session.step is not LoginStep.SUCCESS:
            subtask = self._get_next_subtask(data)
            subtask_id = subtask['subtask_id']
            # サーバーが同じサブタスクを返し続けても、ログインリクエストを送り続けないようにする
            if len(session.subtask_history) >= self.LOGIN_MAX_SUBTASKS:
                raise ProtocolError('login flow', 'too many subtasks')
            if session.subtask_history.count(subtask_id) >= self.LOGIN_MAX_SUBTASK_REPEATS:
                raise ProtocolError('login flow', f'subtask {subtask_id} repeated too many times')
            session.subtask_history.append(subtask_id)
            logger.debug('Handling login subtask %s.', subtask_id)

            if subtask_id == 'LoginJsInstrumentationSubtask':
                data = await self._submit_subtask(
                    session, subtask_id, {'js_instrumentation': {'response': '{}', 'link': 'next_link'}}
                )
            elif subtask_id == 'LoginEnterUserIdentifierSSO':
                data = await self._submit_subtask(
                    session,
                    subtask_id,
                    {
                        'settings_list': {
                            'setting_responses': [
                                {
                                    'key': 'user_identifier',
                                    'response_data': {'text_data': {'result': session.username}},
                                },
                            ],
                            'link': 'next_link',
                        }
                    },
                )
            elif subtask_id in ('LoginEnterAlternateIdentifierSubtask', 'LoginAcid'):
                # 不審なログインとみなされた場合に、メールアドレス (または電話番号) の入力を求められる
                session.step = LoginStep.AWAIT_EMAIL
                if not session.email:
                    raise EmailConfirmationRequiredError(
                        f'Failed to login (email confirmation is required by {subtask_id})', session
                    )
                data = await self._submit_subtask(
                    session, subtask_id, {'enter_text': {'text': session.email, 'link': 'next_link'}}
                )
            elif subtask_id == 'LoginEnterPassword':
                data = await self._submit_subtask(
                    session, subtask_id, {'enter_password': {'password': session.password, 'link': 'next_link'}}
                )
            elif subtask_id == 'AccountDuplicationCheck':
                data = await self._submit_subtask(
                    session, subtask_id, {'check_logged_in_account': {'link': 'AccountDuplicationCheck_false'}}
                )
            elif subtask_id == 'LoginTwoFactorAuthChallenge':
                data = await self._submit_two_factor_code(session)
            elif subtask_id == 'LoginSuccessSubtask':
                # 最後にファイナライズを行うと、Cookie に auth_token がセットされ、ct0 もサーバー側で生成したものに更新される
                await self._execute_flow_task(session, {'flow_token': session.flow_token, 'subtask_inputs': []})
                session.step = LoginStep.SUCCESS
            elif subtask_id == 'DenyLoginSubtask':
                message = self._get_subtask_message(subtask)
                raise LoginDeniedError(f'Failed to login (login denied: {message})', session)
            else:
                raise ProtocolError('login flow', f'unknown subtask: {subtask_id}')

        # auth_token と ct0 はいずれも認証に最低限必要な Cookie のため、取得できなかった場合は認証に失敗したものとみなす
        if get_cookie_value(self._jar, 'auth_token') is None or get_cookie_value(self._jar, 'ct0') is None:
            raise LoginError('Failed to get auth_token or ct0 from Cookie', session)
        logger.debug('Logged in as @%s.', session.username)

    async def _submit_subtask(self, session: LoginSession, subtask_id: str, subtask_input: dict[str, Any]) -> dict[str, Any]:
        return await self._execute_flow_task(
            session,
            {
                'flow_token': session.flow_token,
                'subtask_inputs': [{'subtask_id': subtask_id, **subtask_input}],
            },
            subtask_id=subtask_id,
        )

    async def _submit_two_factor_code(self, session: LoginSession) -> dict[str, Any]:
        session.step = LoginStep.AWAIT_TWO_FACTOR
        if session.two_factor_code is None and session.two_factor_secret is None:
            raise TwoFactorCodeRequiredError('Failed to login (two-factor authentication code is required)', session)

        # 呼び出し元から渡されたコードはやり直しがきかないので 1 回だけ送る
        totp = pyotp.TOTP(session.two_factor_secret) if session.two_factor_secret is not None else None
        attempts = 1 if session.two_factor_code is not None or totp is None else self.TWO_FACTOR_MAX_ATTEMPTS

        last_error: Optional[tweepy.HTTPException] = None
        for attempt in range(attempts):
            code = session.two_factor_code if session.two_factor_code is not None else totp.at(self._clock())  # type: ignore[union-attr]
            try:
                return await self._submit_subtask(
                    session, 'LoginTwoFactorAuthChallenge', {'enter_text': {'text': code, 'link': 'next_link'}}
                )
            except (tweepy.BadRequest, tweepy.Unauthorized) as ex:
                # 同じ時間枠のコードを再送しても通らないため、次の試行ではその時点のコードを生成し直す
                logger.debug('Two-factor code was rejected (attempt %d of %d).', attempt + 1, attempts)
                last_error = ex

        raise TwoFactorCodeRejectedError('Failed to login (two-factor authentication code was rejected)', session) from last_error

    async def _execute_flow_task(
        self,
        session: LoginSession,
        payload: dict[str, Any],
        params: Optional[dict[str, str]] = None,
        subtask_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        ログインフローの 1 ステップを送信し、レスポンスの flow_token を LoginSession に反映する

        Args:
            session (LoginSession): 実行中のログインセッション
            payload (dict[str, Any]): 送信する JSON
            params (Optional[dict[str, str]], optional): クエリパラメーター. Defaults to None.
            subtask_id (Optional[str], optional): 送信するサブタスクの ID (エラーの分類に使う). Defaults to None.

        Returns:
            dict[str, Any]: レスポンスの JSON
        """

        result = await self.dispatcher.dispatch(
            self,
            ApiRequest(
                url=LOGIN_FLOW_URL,
                method='POST',
                params=params,
                json=payload,
                extra_headers={'Content-Type': 'application/json'},
                operation=f'login flow ({subtask_id or "start"})',
            ),
        )
        self._raise_for_login_failure(result, session, subtask_id)

        data = result.value
        if not isinstance(data, dict):
            raise ProtocolError('login flow', 'unexpected response shape')
        if data.get('status') not in (None, 'success'):
            raise LoginError(f'Failed to login (status: {data.get("status")})', session)
        if data.get('flow_token'):
            session.flow_token = data['flow_token']
        return data

    def _raise_for_login_failure(
        self, result: RequestApiResult[Any], session: LoginSession, subtask_id: Optional[str]
    ) -> None:
        if result.success is True:
            return
        error = result.error
        if isinstance(error, (tweepy.BadRequest, tweepy.Unauthorized)) and subtask_id != 'LoginTwoFactorAuthChallenge':
            if INVALID_CREDENTIALS_ERROR_CODES & set(error.api_codes) or subtask_id in (
                'LoginEnterUserIdentifierSSO',
                'LoginEnterPassword',
            ):
                raise InvalidCredentialsError(f'Failed to login (invalid credentials: {error})', session) from error
        result.unwrap()

    @staticmethod
    def _get_next_subtask(data: dict[str, Any]) -> dict[str, Any]:
        subtasks = data.get('subtasks')
        if not subtasks or not isinstance(subtasks, list) or 'subtask_id' not in subtasks[0]:
            raise ProtocolError('login flow', 'no subtask found in response')
        return subtasks[0]

    @staticmethod
    def _get_subtask_message(subtask: dict[str, Any]) -> str:
        try:
            return subtask['cta']['primary_text']['text']
        except (KeyError, TypeError):
            return subtask['subtask_id']
