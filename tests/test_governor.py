"""Tests for the admission governor."""

import pytest

from webchat_rpc.session_manager.errors import AdmissionError
from webchat_rpc.session_manager.governor import AdmissionGovernor


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def governor(clock, **kw):
    values = {
        "max_inflight": 10,
        "max_per_minute": 0,
        "min_tab_gap_ms": 0,
        "min_global_gap_ms": 0,
        "max_wait_ms": 0,
    }
    values.update(kw)
    return AdmissionGovernor(clock=clock, sleep=clock.sleep, **values)


@pytest.mark.asyncio
class TestInflight:
    async def test_rejects_at_cap(self):
        clock = FakeClock()
        gov = governor(clock, max_inflight=1)
        await gov.acquire("a")
        with pytest.raises(AdmissionError) as exc:
            await gov.acquire("b")
        assert exc.value.reason == "max_inflight"
        assert exc.value.code == "rate_limited"

        gov.release()
        await gov.acquire("b")
        assert gov.inflight == 1

    async def test_inflight_checked_before_qpm(self):
        clock = FakeClock()
        gov = governor(clock, max_inflight=1, max_per_minute=1)
        await gov.acquire("a")
        with pytest.raises(AdmissionError) as exc:
            await gov.acquire("b")
        assert exc.value.reason == "max_inflight"

    async def test_admit_releases_on_error(self):
        clock = FakeClock()
        gov = governor(clock, max_inflight=1)
        with pytest.raises(ValueError):
            async with gov.admit("a"):
                assert gov.inflight == 1
                raise ValueError("boom")
        assert gov.inflight == 0

    async def test_release_never_goes_negative(self):
        gov = governor(FakeClock())
        gov.release()
        assert gov.inflight == 0


@pytest.mark.asyncio
class TestPerMinute:
    async def test_qpm_window(self):
        clock = FakeClock()
        gov = governor(clock, max_per_minute=2)
        for key in ("a", "b"):
            async with gov.admit(key):
                pass

        with pytest.raises(AdmissionError) as exc:
            await gov.acquire("c")
        assert exc.value.reason == "qpm"
        assert exc.value.retry_after_ms == 60_000

        clock.advance(30)
        with pytest.raises(AdmissionError) as exc:
            await gov.acquire("c")
        assert exc.value.retry_after_ms == 30_000

        clock.advance(30)
        await gov.acquire("c")
        assert gov.snapshot()["admitted_last_minute"] == 1

    async def test_zero_means_unlimited(self):
        clock = FakeClock()
        gov = governor(clock)
        for i in range(100):
            async with gov.admit(f"k{i}"):
                pass
        assert gov.inflight == 0


@pytest.mark.asyncio
class TestGaps:
    async def test_tab_gap_rejects_beyond_max_wait(self):
        clock = FakeClock()
        gov = governor(clock, min_tab_gap_ms=1000)
        async with gov.admit("a"):
            pass
        with pytest.raises(AdmissionError) as exc:
            await gov.acquire("a")
        assert exc.value.reason == "tab_gap"
        assert exc.value.retry_after_ms == 1000
        assert exc.value.data == {"reason": "tab_gap", "retry_after_ms": 1000}

    async def test_tab_gap_is_per_key(self):
        clock = FakeClock()
        gov = governor(clock, min_tab_gap_ms=1000)
        async with gov.admit("a"):
            pass
        async with gov.admit("b"):
            pass

    async def test_global_gap(self):
        clock = FakeClock()
        gov = governor(clock, min_global_gap_ms=500)
        async with gov.admit("a"):
            pass
        with pytest.raises(AdmissionError) as exc:
            await gov.acquire("b")
        assert exc.value.reason == "global_gap"
        assert exc.value.retry_after_ms == 500

    async def test_short_gap_is_slept_out(self):
        clock = FakeClock()
        gov = governor(clock, min_tab_gap_ms=1000, max_wait_ms=5000)
        async with gov.admit("a"):
            pass
        clock.advance(0.25)
        await gov.acquire("a")
        assert clock.sleeps == [pytest.approx(0.75)]
        assert clock.now >= 1.0
        assert gov.inflight == 1

    async def test_larger_gap_binds(self):
        clock = FakeClock()
        gov = governor(clock, min_tab_gap_ms=200, min_global_gap_ms=800)
        async with gov.admit("a"):
            pass
        with pytest.raises(AdmissionError) as exc:
            await gov.acquire("a")
        assert exc.value.reason == "global_gap"
        assert exc.value.retry_after_ms == 800
