"""
Tests for supervisor.py: the scan state machine end to end.

Covers:
  - the happy path and the "Red Widget" scenario
  - identification timeout → fallback → BACKGROUND_ENRICHING right away
  - watchdog: forces COMPLETE exactly once when everything hangs
  - watchdog disarmed after a legitimate completion
  - manual stop, late background results discarded
  - FAILED only when identification raises and no title can be synthesized
  - fire-and-forget uploads land in the side table
  - phase guards (PhaseError) and discarding the previous session
"""
from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import config
from models import DEFAULT_SPECIFIC_KEYS, FALLBACK_TITLE, UNKNOWN, Identification, PartialResult, ScanPhase
from search_backends.base import SOLD, Comp, CompSearch, SellThrough
from supervisor import PhaseError, ScanSupervisor, StageTimeouts


async def _hang(*_args, **_kwargs):
    await asyncio.sleep(3600)


def make_recognizer(ident=None, enrich=None, identify_side_effect=None, enrich_side_effect=None):
    recognizer = MagicMock()
    ident = ident or Identification(title="Red Widget", search_query="red widget")
    recognizer.identify = AsyncMock(return_value=ident, side_effect=identify_side_effect)
    recognizer.lookup_code = AsyncMock(return_value=ident, side_effect=identify_side_effect)
    recognizer.enrich = AsyncMock(return_value=enrich or PartialResult(), side_effect=enrich_side_effect)
    return recognizer


def make_market(sold_count=12, active_count=40, sold=None, active=None):
    market = MagicMock()

    async def _compare(query, tab, condition):
        if tab == SOLD:
            return sold or CompSearch()
        return active or CompSearch()

    market.compare = AsyncMock(side_effect=_compare)
    market.sell_through = AsyncMock(return_value=SellThrough(active_count=active_count, sold_count=sold_count))
    return market


def make_describer(text="Red Widget\n\nDetails:\n- Brand: Acme"):
    describer = MagicMock()
    describer.generate = AsyncMock(return_value=text)
    return describer


def make_supervisor(recognizer=None, market=None, describer=None, object_store=None, **timeouts):
    limits = dict(preprocess=1.0, identify=1.0, enrich=1.0, market=1.0, watchdog=3.0)
    limits.update({name[:-len("_timeout")]: value for name, value in timeouts.items()})
    supervisor = ScanSupervisor(
        recognizer=recognizer or make_recognizer(),
        market=market or make_market(),
        describer=describer or make_describer(),
        object_store=object_store,
        timeouts=StageTimeouts(**limits),
        platform="EBAY",
    )
    updates = []
    supervisor.publisher.subscribe(updates.append)
    return supervisor, updates


def finals(updates):
    return [u for u in updates if u.final]


def hanging_market_and_describer():
    market = MagicMock()
    market.compare = AsyncMock(side_effect=_hang)
    market.sell_through = AsyncMock(side_effect=_hang)
    describer = MagicMock()
    describer.generate = AsyncMock(side_effect=_hang)
    return market, describer


# ── Happy path ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestHappyPath:
    async def test_phases_in_order(self, jpeg_bytes):
        supervisor, updates = make_supervisor(
            recognizer=make_recognizer(enrich=PartialResult(price_estimate=24.0, specifics={"Brand": "Acme"})),
        )
        result = await supervisor.scan(jpeg_bytes)

        phases = []
        for update in updates:
            if not phases or phases[-1] != update.phase:
                phases.append(update.phase)
        assert phases == [
            ScanPhase.SCANNING,
            ScanPhase.IDENTIFYING,
            ScanPhase.BACKGROUND_ENRICHING,
            ScanPhase.COMPLETE,
        ]
        assert result.price_estimate == 24.0
        assert result.specifics["Brand"] == "Acme"
        assert result.description.startswith("Red Widget")
        assert len(finals(updates)) == 1

    async def test_provisional_published_before_background(self, jpeg_bytes):
        supervisor, updates = make_supervisor(recognizer=make_recognizer(enrich_side_effect=_hang), enrich_timeout=0.2)
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)

        assert session.phase == ScanPhase.BACKGROUND_ENRICHING
        assert session.background_active is True
        assert session.provisional_result.title == "Red Widget"
        assert updates[-1].phase == ScanPhase.BACKGROUND_ENRICHING
        assert updates[-1].result.title == "Red Widget"
        await supervisor.wait(session)

    async def test_red_widget_scenario(self, jpeg_bytes):
        """Identify in budget, deep analysis times out, market returns 12 sold / 40 active."""
        supervisor, _ = make_supervisor(
            recognizer=make_recognizer(enrich_side_effect=_hang),
            market=make_market(sold_count=12, active_count=40),
            enrich_timeout=0.05,
        )
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        result = await asyncio.wait_for(supervisor.wait(session), 2.0)

        assert session.phase == ScanPhase.COMPLETE
        assert result.title == "Red Widget"
        assert result.market_stats.sell_through_rate == 30
        for key in DEFAULT_SPECIFIC_KEYS:
            assert result.specifics[key] == UNKNOWN

    async def test_stages_receive_processed_image(self, jpeg_bytes):
        recognizer = make_recognizer()
        supervisor, _ = make_supervisor(recognizer=recognizer)
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        await supervisor.wait(session)

        recognizer.identify.assert_awaited_once_with(session.processed_image)
        recognizer.enrich.assert_awaited_once_with(session.processed_image, "Red Widget")

    async def test_scanned_code_uses_lookup(self, jpeg_bytes):
        recognizer = make_recognizer(ident=Identification(title="Acme 3000", search_query="acme 3000"))
        supervisor, _ = make_supervisor(recognizer=recognizer)
        result = await supervisor.scan(jpeg_bytes, scanned_code="012345678905")

        recognizer.lookup_code.assert_awaited_once_with("012345678905")
        recognizer.identify.assert_not_called()
        assert result.barcode == "012345678905"
        assert result.specifics["UPC"] == "012345678905"

    async def test_comps_attached(self, jpeg_bytes):
        sold = CompSearch.from_items([
            Comp(id="1", title="Red Widget (Estimated Sold)", price=20.0, shipping=5.0, url="u1"),
        ], is_estimated=True)
        active = CompSearch.from_items([Comp(id="2", title="Red Widget", price=30.0, shipping=0.0, url="u2")])
        supervisor, _ = make_supervisor(market=make_market(sold=sold, active=active))
        result = await supervisor.scan(jpeg_bytes)

        assert result.market_stats.sold_comps[0].title == "Red Widget"
        assert result.market_stats.active_comps[0].id == "2"
        assert result.market_stats.is_estimated is True


    async def test_enrichment_published_while_market_pending(self, jpeg_bytes):
        market, describer = hanging_market_and_describer()
        supervisor, updates = make_supervisor(
            recognizer=make_recognizer(enrich=PartialResult(price_estimate=24.0)),
            market=market, describer=describer, market_timeout=30.0,
        )
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        await asyncio.sleep(0.1)

        assert session.phase == ScanPhase.BACKGROUND_ENRICHING
        assert session.live_result.price_estimate == 24.0
        assert updates[-1].result.price_estimate == 24.0
        assert not updates[-1].final
        supervisor.discard(session)

    async def test_estimate_fallbacks_when_deep_analysis_times_out(self, jpeg_bytes, monkeypatch):
        monkeypatch.setattr(config, "DEFAULT_SHIPPING_ESTIMATE", 7.5)
        sold = CompSearch.from_items([
            Comp(id="1", title="Red Widget", price=20.0, shipping=5.0, url="u1"),
            Comp(id="2", title="Red Widget", price=30.0, shipping=5.0, url="u2"),
        ])
        supervisor, _ = make_supervisor(
            recognizer=make_recognizer(enrich_side_effect=_hang),
            market=make_market(sold=sold), enrich_timeout=0.05,
        )
        result = await asyncio.wait_for(supervisor.scan(jpeg_bytes), 2.0)

        assert result.price_estimate == 30.0
        assert result.shipping_estimate == 7.5

    async def test_supplied_estimates_not_replaced_by_fallbacks(self, jpeg_bytes, monkeypatch):
        monkeypatch.setattr(config, "DEFAULT_SHIPPING_ESTIMATE", 7.5)
        sold = CompSearch.from_items([Comp(id="1", title="Red Widget", price=20.0, shipping=5.0, url="u1")])
        supervisor, _ = make_supervisor(
            recognizer=make_recognizer(enrich=PartialResult(price_estimate=24.0, shipping_estimate=9.0)),
            market=make_market(sold=sold),
        )
        result = await supervisor.scan(jpeg_bytes)

        assert result.price_estimate == 24.0
        assert result.shipping_estimate == 9.0

# ── Identification fallback ────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestIdentificationFallback:
    async def test_timeout_moves_on_with_fallback(self, jpeg_bytes):
        supervisor, updates = make_supervisor(
            recognizer=make_recognizer(identify_side_effect=_hang), identify_timeout=0.05,
        )
        session = supervisor.start_capture()
        started = time.monotonic()
        await supervisor.submit_frame(session, jpeg_bytes)
        elapsed = time.monotonic() - started

        assert session.phase == ScanPhase.BACKGROUND_ENRICHING
        assert session.provisional_result.title == FALLBACK_TITLE
        assert elapsed < 1.0
        enriching = [u for u in updates if u.phase == ScanPhase.BACKGROUND_ENRICHING]
        assert enriching and enriching[0].result.title == FALLBACK_TITLE
        await supervisor.wait(session)
        assert session.phase == ScanPhase.COMPLETE

    async def test_fallback_then_enrich_title_drives_market(self, jpeg_bytes):
        market = make_market()
        recognizer = make_recognizer(
            identify_side_effect=RuntimeError("All recognizer providers failed"),
            enrich=PartialResult(title="Acme Widget 3000", search_query="acme widget 3000"),
        )
        supervisor, _ = make_supervisor(recognizer=recognizer, market=market)
        result = await supervisor.scan(jpeg_bytes)

        assert result.title == "Acme Widget 3000"
        assert result.confidence == 80
        market.sell_through.assert_awaited_once_with("acme widget 3000")

    async def test_fallback_without_enrichment_skips_market(self, jpeg_bytes):
        market = make_market()
        supervisor, _ = make_supervisor(
            recognizer=make_recognizer(identify_side_effect=RuntimeError("down")), market=market,
        )
        result = await supervisor.scan(jpeg_bytes)

        assert result.title == FALLBACK_TITLE
        assert result.market_stats is None
        market.compare.assert_not_called()
        assert set(DEFAULT_SPECIFIC_KEYS) <= set(result.specifics)


# ── Watchdog ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestWatchdog:
    async def test_forces_complete_exactly_once_when_everything_hangs(self, jpeg_bytes):
        market = MagicMock()
        market.compare = AsyncMock(side_effect=_hang)
        market.sell_through = AsyncMock(side_effect=_hang)
        describer = MagicMock()
        describer.generate = AsyncMock(side_effect=_hang)
        supervisor, updates = make_supervisor(
            recognizer=make_recognizer(identify_side_effect=_hang, enrich_side_effect=_hang),
            market=market, describer=describer,
            identify_timeout=30.0, enrich_timeout=30.0, market_timeout=30.0, watchdog_timeout=0.2,
        )
        session = supervisor.start_capture()
        started = time.monotonic()
        submit = asyncio.create_task(supervisor.submit_frame(session, jpeg_bytes))

        result = await asyncio.wait_for(supervisor.wait(session), 2.0)
        elapsed = time.monotonic() - started

        assert session.phase == ScanPhase.COMPLETE
        assert 0.15 <= elapsed < 1.0
        assert result.title == FALLBACK_TITLE
        await asyncio.sleep(0.3)
        assert len(finals(updates)) == 1

        submit.cancel()
        with pytest.raises(asyncio.CancelledError):
            await submit

    async def test_forces_complete_during_background(self, jpeg_bytes):
        supervisor, updates = make_supervisor(
            recognizer=make_recognizer(enrich_side_effect=_hang), enrich_timeout=30.0, watchdog_timeout=0.2,
        )
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        result = await asyncio.wait_for(supervisor.wait(session), 2.0)

        assert session.phase == ScanPhase.COMPLETE
        assert result.title == "Red Widget"
        assert session.background_active is False
        assert len(finals(updates)) == 1

    async def test_disarmed_after_legitimate_completion(self, jpeg_bytes):
        supervisor, updates = make_supervisor(watchdog_timeout=0.1)
        await supervisor.scan(jpeg_bytes)
        await asyncio.sleep(0.25)
        assert len(finals(updates)) == 1
        assert updates[-1].phase == ScanPhase.COMPLETE


    async def test_keeps_finished_deep_analysis(self, jpeg_bytes):
        market, describer = hanging_market_and_describer()
        supervisor, updates = make_supervisor(
            recognizer=make_recognizer(enrich=PartialResult(price_estimate=24.0, specifics={"Brand": "Acme"})),
            market=market, describer=describer, market_timeout=30.0, watchdog_timeout=0.3,
        )
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        result = await asyncio.wait_for(supervisor.wait(session), 2.0)

        assert result.price_estimate == 24.0
        assert result.specifics["Brand"] == "Acme"
        assert len(finals(updates)) == 1

    async def test_scan_returns_when_watchdog_fires_during_identification(self, jpeg_bytes):
        supervisor, _ = make_supervisor(
            recognizer=make_recognizer(identify_side_effect=_hang), identify_timeout=30.0, watchdog_timeout=0.2,
        )
        started = time.monotonic()
        result = await asyncio.wait_for(supervisor.scan(jpeg_bytes), 2.0)

        assert time.monotonic() - started < 1.0
        assert result.title == FALLBACK_TITLE
        assert supervisor.live_session.phase == ScanPhase.COMPLETE
        for task in list(supervisor._tasks):
            task.cancel()

# ── Manual stop ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestStop:
    async def test_stop_uses_partial_result(self, jpeg_bytes):
        supervisor, updates = make_supervisor(recognizer=make_recognizer(enrich_side_effect=_hang), enrich_timeout=30.0)
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)

        assert supervisor.stop(session) is True
        assert session.phase == ScanPhase.COMPLETE
        assert session.final_result.title == "Red Widget"
        assert supervisor.stop(session) is False
        assert len(finals(updates)) == 1

    async def test_late_background_result_discarded(self, jpeg_bytes):
        async def late(*_):
            await asyncio.sleep(0.1)
            return PartialResult(price_estimate=99.0)

        supervisor, updates = make_supervisor(recognizer=make_recognizer(enrich_side_effect=late))
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        supervisor.stop(session)
        await asyncio.sleep(0.25)

        assert session.final_result.price_estimate == 0.0
        assert len(finals(updates)) == 1

    async def test_stop_keeps_finished_deep_analysis(self, jpeg_bytes):
        market, describer = hanging_market_and_describer()
        supervisor, updates = make_supervisor(
            recognizer=make_recognizer(enrich=PartialResult(price_estimate=24.0, specifics={"Brand": "Acme"})),
            market=market, describer=describer, market_timeout=30.0,
        )
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        await asyncio.sleep(0.2)

        assert supervisor.stop(session) is True
        assert session.final_result.title == "Red Widget"
        assert session.final_result.price_estimate == 24.0
        assert session.final_result.specifics["Brand"] == "Acme"
        assert len(finals(updates)) == 1

    async def test_stop_before_identifying_raises(self):
        supervisor, _ = make_supervisor()
        session = supervisor.start_capture()
        with pytest.raises(PhaseError):
            supervisor.stop(session)


# ── FAILED ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestFailed:
    async def test_failed_only_without_synthesized_title(self, jpeg_bytes, caplog):
        supervisor, updates = make_supervisor()
        session = supervisor.start_capture()
        with patch("supervisor.identification.identify", AsyncMock(side_effect=RuntimeError("bug"))), \
             patch("supervisor.identification.fallback_identification",
                   return_value=Identification(title="", search_query="")), \
             caplog.at_level("CRITICAL", logger="supervisor"):
            await supervisor.submit_frame(session, jpeg_bytes)

        assert session.phase == ScanPhase.FAILED
        assert await asyncio.wait_for(supervisor.wait(session), 1.0) is not None
        assert any(r.levelname == "CRITICAL" for r in caplog.records)
        assert finals(updates)[-1].phase == ScanPhase.FAILED

    async def test_identify_raising_with_fallback_title_still_completes(self, jpeg_bytes):
        supervisor, _ = make_supervisor()
        session = supervisor.start_capture()
        with patch("supervisor.identification.identify", AsyncMock(side_effect=RuntimeError("bug"))):
            await supervisor.submit_frame(session, jpeg_bytes)
        await supervisor.wait(session)

        assert session.phase == ScanPhase.COMPLETE
        assert session.final_result.title == FALLBACK_TITLE


# ── Uploads ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestUploads:
    async def test_url_lands_in_side_table(self, jpeg_bytes):
        store = MagicMock()
        store.upload = AsyncMock(return_value="https://cdn/scans/anon/1.jpg")
        supervisor, _ = make_supervisor(object_store=store)
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        await supervisor.wait(session)
        await supervisor.flush()

        store.upload.assert_awaited_once_with(session.processed_image)
        assert supervisor.take_upload(session.session_id) == "https://cdn/scans/anon/1.jpg"
        assert supervisor.take_upload(session.session_id) is None

    async def test_upload_failure_does_not_affect_scan(self, jpeg_bytes):
        store = MagicMock()
        store.upload = AsyncMock(side_effect=RuntimeError("storage down"))
        supervisor, _ = make_supervisor(object_store=store)
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        await supervisor.wait(session)
        await supervisor.flush()

        assert session.phase == ScanPhase.COMPLETE
        assert supervisor.take_upload(session.session_id) is None

    async def test_slow_upload_never_blocks_pipeline(self, jpeg_bytes):
        store = MagicMock()
        store.upload = AsyncMock(side_effect=_hang)
        supervisor, _ = make_supervisor(object_store=store)
        result = await asyncio.wait_for(supervisor.scan(jpeg_bytes), 2.0)
        assert result.title == "Red Widget"


    async def test_upload_finishing_after_discard_is_dropped(self, jpeg_bytes):
        async def slow_upload(_image):
            await asyncio.sleep(0.1)
            return "https://cdn/scans/anon/1.jpg"

        store = MagicMock()
        store.upload = AsyncMock(side_effect=slow_upload)
        supervisor, _ = make_supervisor(
            recognizer=make_recognizer(enrich_side_effect=_hang), object_store=store, enrich_timeout=0.5,
        )
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        supervisor.discard(session)
        await asyncio.sleep(0.3)

        store.upload.assert_awaited_once()
        assert supervisor.take_upload(session.session_id) is None
        assert supervisor._uploads == {}

# ── Phase guards ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestPhaseGuards:
    async def test_frame_submitted_twice(self, jpeg_bytes):
        supervisor, _ = make_supervisor()
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        with pytest.raises(PhaseError):
            await supervisor.submit_frame(session, jpeg_bytes)
        await supervisor.wait(session)

    async def test_illegal_transition(self):
        supervisor, _ = make_supervisor()
        session = supervisor.start_capture()
        with pytest.raises(PhaseError):
            supervisor._transition(session, ScanPhase.COMPLETE)

    async def test_new_capture_discards_previous(self, jpeg_bytes):
        supervisor, _ = make_supervisor()
        first = supervisor.start_capture()
        second = supervisor.start_capture()

        assert supervisor.live_session is second
        with pytest.raises(PhaseError):
            await supervisor.submit_frame(first, jpeg_bytes)
        result = await supervisor.scan(jpeg_bytes)
        assert result.title == "Red Widget"

    async def test_discarded_session_results_dropped(self, jpeg_bytes):
        supervisor, updates = make_supervisor(recognizer=make_recognizer(enrich_side_effect=_hang), enrich_timeout=0.1)
        session = supervisor.start_capture()
        await supervisor.submit_frame(session, jpeg_bytes)
        supervisor.discard(session)
        await asyncio.sleep(0.3)

        assert session.final_result is None
        assert finals(updates) == []
