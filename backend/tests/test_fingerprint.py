"""
Tests for fingerprint bundles and rotation.
"""

import json
import random
import pytest
from datetime import datetime, timedelta, timezone

from api.database import FingerprintUsage
from scrapers.stealth.fingerprint import FINGERPRINTS, FINGERPRINTS_BY_ID, FingerprintRotator, context_options
from scrapers.stealth.injection import STEALTH_SCRIPT, fingerprint_script, get_stealth_headers


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestBundles:

    def test_ids_unique(self):
        ids = [fp.id for fp in FINGERPRINTS]
        assert len(ids) == len(set(ids))

    @pytest.mark.parametrize("fp", FINGERPRINTS, ids=lambda fp: fp.id)
    def test_internally_consistent(self, fp):
        if "Macintosh" in fp.user_agent:
            assert fp.platform == "MacIntel"
        if "Windows" in fp.user_agent:
            assert fp.platform == "Win32"
        if "Chrome/" in fp.user_agent:
            assert fp.vendor == "Google Inc."
        else:
            assert fp.vendor == "Apple Computer, Inc."
        assert fp.viewport_width <= fp.screen_width
        assert fp.languages

    def test_context_options(self):
        fp = FINGERPRINTS[0]
        options = context_options(fp)

        assert options["user_agent"] == fp.user_agent
        assert options["viewport"] == {"width": fp.viewport_width, "height": fp.viewport_height}
        assert options["timezone_id"] == fp.timezone_id
        assert options["is_mobile"] is False

    def test_fingerprint_script(self):
        fp = FINGERPRINTS[3]
        script = fingerprint_script(fp)

        assert json.dumps(fp.platform) in script
        assert json.dumps(fp.languages) in script
        assert str(fp.hardware_concurrency) in script

    def test_stealth_headers_by_country(self):
        assert get_stealth_headers("CA")["Accept-Language"].startswith("en-CA")
        assert get_stealth_headers("US")["Accept-Language"].startswith("en-US")


class TestIdentityInjection:

    def test_base_script_leaves_identity_to_bundle(self):
        for name in ("'platform'", "'vendor'", "'languages'", "'deviceMemory'", "'hardwareConcurrency'"):
            assert name not in STEALTH_SCRIPT

    @pytest.mark.parametrize("fp", FINGERPRINTS, ids=lambda fp: fp.id)
    def test_every_override_redefinable(self, fp):
        script = fingerprint_script(fp)

        assert script.count("Object.defineProperty") == script.count("configurable: true")
        assert STEALTH_SCRIPT.count("Object.defineProperty") == STEALTH_SCRIPT.count("configurable: true")

    def test_windows_bundle(self):
        fp = FINGERPRINTS_BY_ID["win_chrome_131_16gb"]
        script = fingerprint_script(fp)
        headers = get_stealth_headers("CA", fp)

        assert "get: () => \"Win32\"" in script
        assert "MacIntel" not in script
        assert "Direct3D11" in script
        assert "window.chrome" in script
        assert headers["sec-ch-ua-platform"] == '"Windows"'
        assert 'v="131"' in headers["sec-ch-ua"]

    def test_safari_bundle(self):
        fp = FINGERPRINTS_BY_ID["mac_safari_17_16gb"]
        script = fingerprint_script(fp)
        headers = get_stealth_headers("CA", fp)

        assert "get: () => \"Apple Computer, Inc.\"" in script
        assert "Google Inc." not in script
        assert "window.chrome" not in script
        assert "sec-ch-ua" not in headers
        assert "sec-ch-ua-platform" not in headers

    def test_chrome_version_follows_bundle(self):
        headers = get_stealth_headers("US", FINGERPRINTS_BY_ID["mac_chrome_130_8gb"])

        assert 'v="130"' in headers["sec-ch-ua"]
        assert headers["sec-ch-ua-platform"] == '"macOS"'


class TestRotation:

    def test_off_always_first(self, db_session):
        rotator = FingerprintRotator(db_session, strategy="off")

        assert {rotator.select().id for _ in range(5)} == {FINGERPRINTS[0].id}

    def test_aggressive_random(self, db_session):
        rotator = FingerprintRotator(db_session, strategy="aggressive", rng=random.Random(7))

        chosen = {rotator.select().id for _ in range(50)}
        assert len(chosen) > 1

    def test_moderate_prefers_never_used(self, db_session):
        clock = FakeClock()
        rotator = FingerprintRotator(db_session, strategy="moderate", clock=clock)

        first = rotator.select()
        rotator.mark_used(first.id, success=True)
        second = rotator.select()

        assert first.id == FINGERPRINTS[0].id
        assert second.id == FINGERPRINTS[1].id

    def test_moderate_least_recently_used(self, db_session):
        clock = FakeClock()
        rotator = FingerprintRotator(db_session, strategy="moderate", clock=clock)
        for fp in FINGERPRINTS:
            rotator.mark_used(fp.id, success=True)
            clock.advance(minutes=1)

        assert rotator.select().id == FINGERPRINTS[0].id

    def test_ceiling_skips_bundle(self, db_session):
        clock = FakeClock()
        rotator = FingerprintRotator(db_session, strategy="moderate", clock=clock)
        for fp in FINGERPRINTS:
            rotator.mark_used(fp.id, success=True)
        clock.advance(minutes=1)
        for _ in range(5):
            rotator.mark_used(FINGERPRINTS[0].id, success=True)
        # Make the exhausted bundle the oldest
        db_session.get(FingerprintUsage, FINGERPRINTS[0].id).last_used_at = clock.now - timedelta(minutes=30)
        db_session.commit()

        assert rotator.select().id != FINGERPRINTS[0].id

    def test_ceiling_expires_after_window(self, db_session):
        clock = FakeClock()
        rotator = FingerprintRotator(db_session, strategy="moderate", clock=clock)
        for fp in FINGERPRINTS:
            for _ in range(5):
                rotator.mark_used(fp.id, success=True)
        clock.advance(hours=2)

        assert rotator.select().id == FINGERPRINTS[0].id
        assert db_session.query(FingerprintUsage).count() == len(FINGERPRINTS)

    def test_exhaustion_resets_history(self, db_session):
        clock = FakeClock()
        rotator = FingerprintRotator(db_session, strategy="moderate", clock=clock)
        for fp in FINGERPRINTS:
            for _ in range(5):
                rotator.mark_used(fp.id, success=True)

        assert rotator.select().id == FINGERPRINTS[0].id
        assert db_session.query(FingerprintUsage).count() == 0


class TestUsageTracking:

    def test_mark_used_counts(self, db_session):
        rotator = FingerprintRotator(db_session, strategy="moderate", clock=FakeClock())
        rotator.mark_used("mac_chrome_131_16gb", success=True)
        rotator.mark_used("mac_chrome_131_16gb", success=False)

        row = db_session.get(FingerprintUsage, "mac_chrome_131_16gb")
        assert row.use_count == 2
        assert row.success_count == 1
        assert row.failure_count == 1
        assert row.last_used_at is not None

    def test_stats(self, db_session):
        rotator = FingerprintRotator(db_session, strategy="conservative", clock=FakeClock())
        rotator.mark_used(FINGERPRINTS[1].id, success=True)
        rotator.mark_used(FINGERPRINTS[1].id, success=False)

        stats = rotator.get_stats()
        assert stats["strategy"] == "conservative"
        assert stats["total"] == len(FINGERPRINTS)
        assert stats["used"] == 1
        entry = next(item for item in stats["fingerprints"] if item["id"] == FINGERPRINTS[1].id)
        assert entry["uses"] == 2
        assert entry["success_rate"] == 0.5
