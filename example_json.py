import asyncio
import json
import os
from pathlib import Path
from pprint import pprint

import dotenv
import tweepy

from twitter_sessionlib import LoginError, RateLimitOrBlockSignal, TwitterClient


try:
    terminal_size = os.get_terminal_size().columns
except OSError:
    terminal_size = 80

# ユーザー名とパスワードを環境変数から取得
dotenv.load_dotenv()
screen_name = os.environ.get('TWITTER_SCREEN_NAME', 'your_screen_name')
password = os.environ.get('TWITTER_PASSWORD', 'your_password')
email = os.environ.get('TWITTER_EMAIL')
two_factor_secret = os.environ.get('TWITTER_TWO_FACTOR_SECRET')


async def main() -> None:
    async with TwitterClient() as client:

        # 保存した Cookie を使って認証
        ## 毎回ログインすると不審なログインとして扱われる可能性が高くなるため、
        ## できるだけ以前認証した際に保存した Cookie を使って認証することを推奨
        if Path('cookie.json').exists():

            # 保存した Cookie を読み込んで TwitterClient に渡す
            with open('cookie.json', 'r') as f:
                client.set_cookies(json.load(f))

        # スクリーンネームとパスワードを指定して認証
        else:

            # ログインフローでは多数の API リクエストが行われ、リクエスト間隔の待機も入るため、完了まで数秒かかる
            try:
                await client.login(screen_name, password, email=email, two_factor_secret=two_factor_secret)
            except LoginError as ex:
                # パスワードが間違っている・本人確認が必要などの理由でログインに失敗した
                failed_at = ex.session.failed_at if ex.session is not None else None
                raise Exception(f'Failed to authenticate with password (Step: {failed_at}, Message: {ex})')
            except tweepy.HTTPException as ex:
                # レートリミットなどの理由でログインに失敗した
                if len(ex.api_codes) > 0 and len(ex.api_messages) > 0:
                    error_message = f'Code: {ex.api_codes[0]}, Message: {ex.api_messages[0]}'
                else:
                    error_message = 'Unknown Error'
                raise Exception(f'Failed to authenticate with password ({error_message})')

            # 現在のログインセッションの Cookie を JSON ファイルに保存
            with open('cookie.json', 'w') as f:
                json.dump(client.get_cookies_as_dict(), f, ensure_ascii=False, indent=4)

        print('=' * terminal_size)
        print('Logged in user:')
        print('-' * terminal_size)
        try:
            assert await client.is_logged_in() is True
        except RateLimitOrBlockSignal:
            # ブロックやレートリミットの兆候があれば、次のリクエストからは別のブラウザとして振る舞う
            client.rotate_fingerprint()
            raise
        pprint(await client.me())
        print('=' * terminal_size)

        print('Current fingerprint:')
        print('-' * terminal_size)
        pprint(client.get_current_fingerprint_info())
        print('=' * terminal_size)

        # 継続してログインしない場合は明示的にログアウト
        ## 単に Cookie を消去するだけだと Twitter にセッションが残り続けてしまう
        ## ログアウト後は、取得した Cookie は再利用できなくなる
        #await client.logout()
        #os.unlink('cookie.json')


if __name__ == '__main__':
    asyncio.run(main())
