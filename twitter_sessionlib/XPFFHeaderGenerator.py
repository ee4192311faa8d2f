# X-XP-Forwarded-For ヘッダーの生成ロジック
# ref: https://github.com/keatonLiu/twikit/blob/main/twikit/xpff/xpffGenerator.py
# ref: https://github.com/dsekz/twitter-x-xp-forwarded-for-header

import binascii
import hashlib
import json
import time
from typing import Callable, Optional

from Cryptodome.Cipher import AES
from Cryptodome.Random import get_random_bytes


XPFF_BASE_KEY = '0e6be1f1e21ffc33590b888fd4dc81b19713e570e805d4e5df80a493c9571a05'


class XPFFHeaderGenerator:
    """
    Web App が送信する X-XP-Forwarded-For ヘッダーを生成する
    平文にはナビゲーターの User-Agent が入るため、フィンガープリントがローテーションされたら
    その時点のフィンガープリントの User-Agent を渡して生成し直す必要がある
    """

    NONCE_SIZE = 12
    TAG_SIZE = 16

    def __init__(self, base_key: str = XPFF_BASE_KEY, clock: Optional[Callable[[], float]] = None) -> None:
        self.base_key = base_key
        self._clock = clock or time.time

    def derive_key(self, guest_id: str) -> bytes:
        return hashlib.sha256((self.base_key + guest_id).encode()).digest()

    def encrypt(self, plaintext: str, guest_id: str) -> str:
        nonce = get_random_bytes(self.NONCE_SIZE)
        cipher = AES.new(self.derive_key(guest_id), AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode())
        return binascii.hexlify(nonce + ciphertext + tag).decode()

    def decrypt(self, hex_string: str, guest_id: str) -> str:
        """
        生成したヘッダー値を復号する (ブラウザが実際に送っている値と構造が一致するかの確認用)

        Args:
            hex_string (str): X-XP-Forwarded-For ヘッダーの値
            guest_id (str): 暗号化に使った guest_id Cookie の値

        Returns:
            str: 復号された JSON 文字列

        Raises:
            ValueError: 鍵が一致しないか、値が改ざんされている
        """

        raw = binascii.unhexlify(hex_string)
        nonce = raw[: self.NONCE_SIZE]
        ciphertext = raw[self.NONCE_SIZE : -self.TAG_SIZE]
        tag = raw[-self.TAG_SIZE :]
        cipher = AES.new(self.derive_key(guest_id), AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(ciphertext, tag).decode()

    def generate(self, user_agent: str, guest_id: str) -> str:
        """
        指定された User-Agent と guest_id Cookie から X-XP-Forwarded-For ヘッダーの値を生成する

        Args:
            user_agent (str): 現在のフィンガープリントの User-Agent
            guest_id (str): guest_id Cookie の値 (ゲストトークンとは異なる)

        Returns:
            str: X-XP-Forwarded-For ヘッダーの値
        """

        payload = {
            'navigator_properties': {'hasBeenActive': 'true', 'userAgent': user_agent, 'webdriver': 'false'},
            'created_at': int(self._clock() * 1000),
        }
        return self.encrypt(json.dumps(payload, ensure_ascii=False, separators=(',', ':')), guest_id)
