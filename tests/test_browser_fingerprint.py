import random

import pytest

from twitter_sessionlib.BrowserFingerprint import (
    CHROME_USER_AGENTS,
    DESKTOP_USER_AGENTS,
    FIREFOX_USER_AGENTS,
    MOBILE_USER_AGENTS,
    SAFARI_USER_AGENTS,
    AntiDetectionConfig,
    generate_browser_fingerprint,
    get_sec_ch_ua,
    get_sec_ch_ua_platform,
    is_chromium_user_agent,
    is_mobile_user_agent,
)


def test_sec_ch_ua_only_for_chromium():
    for user_agent in CHROME_USER_AGENTS:
        assert get_sec_ch_ua(user_agent) != ''
    for user_agent in FIREFOX_USER_AGENTS + SAFARI_USER_AGENTS:
        assert get_sec_ch_ua(user_agent) == ''


def test_sec_ch_ua_platform():
    assert get_sec_ch_ua_platform(MOBILE_USER_AGENTS[0]) in ('"Android"', '"iOS"')
    for user_agent in CHROME_USER_AGENTS:
        assert get_sec_ch_ua_platform(user_agent) in ('"Windows"', '"macOS"', '"Linux"')


def test_generated_fingerprints_are_consistent():
    rng = random.Random(42)
    for _ in range(300):
        fingerprint = generate_browser_fingerprint(rng)
        assert fingerprint.user_agent in DESKTOP_USER_AGENTS + MOBILE_USER_AGENTS
        # Sec-CH-UA は Chromium 系の User-Agent のときだけ入る
        assert (fingerprint.sec_ch_ua != '') == is_chromium_user_agent(fingerprint.user_agent)
        assert (fingerprint.sec_ch_ua_mobile == '?1') == is_mobile_user_agent(fingerprint.user_agent)
        assert fingerprint.is_mobile == is_mobile_user_agent(fingerprint.user_agent)
        assert 100 <= fingerprint.request_delay < 2000
        assert (fingerprint.cache_control, fingerprint.pragma) in (('max-age=0', ''), ('no-cache', 'no-cache'))
        assert len(fingerprint.session_id) == 32


def test_mobile_pool_probability():
    rng = random.Random(0)
    config = AntiDetectionConfig(mobile_pool_probability=0.0)
    for _ in range(200):
        assert generate_browser_fingerprint(rng, config).is_mobile is False


def test_session_ids_are_unique():
    rng = random.Random(7)
    session_ids = {generate_browser_fingerprint(rng).session_id for _ in range(50)}
    assert len(session_ids) == 50


def test_custom_delay_range():
    rng = random.Random(3)
    config = AntiDetectionConfig(min_delay_ms=10, max_delay_ms=20)
    for _ in range(100):
        assert 10 <= generate_browser_fingerprint(rng, config).request_delay < 20


def test_validate_config_01():
    with pytest.raises(ValueError):
        AntiDetectionConfig(min_delay_ms=500, max_delay_ms=500)


def test_validate_config_02():
    with pytest.raises(ValueError):
        AntiDetectionConfig(dnt_probability=1.5)


def test_validate_config_03():
    with pytest.raises(ValueError):
        AntiDetectionConfig(rotation_interval_ms=0)
