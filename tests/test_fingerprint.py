import asyncio
import random

from etl.antibot.fingerprint import DESKTOP_FINGERPRINTS, create_stealth_context, random_fingerprint


class FakeContext:
    def __init__(self, kwargs):
        self.kwargs = kwargs
        self.scripts = []

    async def add_init_script(self, script):
        self.scripts.append(script)


class FakeBrowser:
    async def new_context(self, **kwargs):
        return FakeContext(kwargs)


def test_fingerprints_are_australian_desktops():
    for fingerprint in DESKTOP_FINGERPRINTS:
        options = fingerprint.to_playwright_context()
        assert options["is_mobile"] is False
        assert options["locale"] == "en-AU"
        assert options["timezone_id"].startswith("Australia/")


def test_random_fingerprint_uses_given_rng():
    assert random_fingerprint(random.Random(3)) in DESKTOP_FINGERPRINTS


def test_stealth_context_applies_fingerprint_and_overrides():
    fingerprint = DESKTOP_FINGERPRINTS[1]

    context = asyncio.run(
        create_stealth_context(FakeBrowser(), fingerprint=fingerprint, locale="en-GB")
    )

    assert context.kwargs["user_agent"] == fingerprint.user_agent
    assert context.kwargs["viewport"] == {"width": 1440, "height": 900}
    assert context.kwargs["locale"] == "en-GB"
    assert "'MacIntel'" in context.scripts[0]
    assert "webdriver" in context.scripts[0]
