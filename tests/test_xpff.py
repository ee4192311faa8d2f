import json

import pytest

from twitter_sessionlib.XPFFHeaderGenerator import XPFFHeaderGenerator


USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
GUEST_ID = 'v1%3A170000000000000000'


def test_generate_and_decrypt():
    generator = XPFFHeaderGenerator(clock=lambda: 1700000000.5)
    header = generator.generate(USER_AGENT, GUEST_ID)
    payload = json.loads(generator.decrypt(header, GUEST_ID))
    assert payload['navigator_properties']['userAgent'] == USER_AGENT
    assert payload['navigator_properties']['webdriver'] == 'false'
    assert payload['created_at'] == 1700000000500


def test_nonce_changes_every_time():
    generator = XPFFHeaderGenerator()
    assert generator.generate(USER_AGENT, GUEST_ID) != generator.generate(USER_AGENT, GUEST_ID)


def test_decrypt_with_wrong_guest_id():
    generator = XPFFHeaderGenerator()
    header = generator.generate(USER_AGENT, GUEST_ID)
    with pytest.raises(ValueError):
        generator.decrypt(header, 'v1%3A999')
