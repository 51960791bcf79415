"""
supervisor.py — the scan state machine.

    IDLE → SCANNING → IDENTIFYING → BACKGROUND_ENRICHING → COMPLETE
                          │
                          └──→ FAILED   (identification raised and no title
                                         could be synthesized — a defect)

The supervisor is the only thing that mutates a CaptureSession.  Stages are
plain coroutines that take values in and hand (possibly degraded) values
back; they never raise into here.

Three things can move a session to COMPLETE, and whichever comes first wins:
  • the background phase joining and publishing the merged result
  • the watchdog, armed at SCANNING → IDENTIFYING
  • a manual stop() from the user
Completion disarms the watchdog before anything else, and is idempotent.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

import config
import deep_analysis
import identification
import market_research
from image_processor import preprocess
from merger import ResultPublisher, ScanUpdate, apply_fallbacks, from_identification, merge
from models import FALLBACK_TITLE, CaptureSession, Identification, PartialResult, ScanPhase

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ScanPhase, frozenset[ScanPhase]] = {
    ScanPhase.IDLE:                 frozenset({ScanPhase.SCANNING}),
    ScanPhase.SCANNING:             frozenset({ScanPhase.IDENTIFYING}),
    ScanPhase.IDENTIFYING:          frozenset({ScanPhase.BACKGROUND_ENRICHING, ScanPhase.COMPLETE, ScanPhase.FAILED}),
    ScanPhase.BACKGROUND_ENRICHING: frozenset({ScanPhase.COMPLETE}),
    ScanPhase.COMPLETE:             frozenset(),
    ScanPhase.FAILED:               frozenset(),
}


class PhaseError(RuntimeError):
    """An operation was attempted from a phase that does not allow it."""


@dataclass
class StageTimeouts:
    preprocess: float = 3.0
    identify: float = 15.0
    enrich: float = 25.0
    market: float = 20.0
    watchdog: float = 45.0

    @classmethod
    def from_config(cls) -> "StageTimeouts":
        return cls(
            preprocess=config.PREPROCESS_TIMEOUT,
            identify=config.IDENTIFY_TIMEOUT,
            enrich=config.ENRICH_TIMEOUT,
            market=config.MARKET_TIMEOUT,
            watchdog=config.WATCHDOG_TIMEOUT,
        )


@dataclass
class _Run:
    """Supervisor-private bookkeeping for one session."""
    done: asyncio.Event = field(default_factory=asyncio.Event)
    watchdog: Optional[asyncio.TimerHandle] = None
    discarded: bool = False


class ScanSupervisor:

    def __init__(
        self,
        recognizer,
        market,
        describer,
        object_store=None,
        timeouts: Optional[StageTimeouts] = None,
        publisher: Optional[ResultPublisher] = None,
        platform: Optional[str] = None,
        notes: str = "",
    ):
        self._recognizer = recognizer
        self._market = market
        self._describer = describer
        self._object_store = object_store
        self.timeouts = timeouts or StageTimeouts.from_config()
        self.publisher = publisher or ResultPublisher()
        self._platform = platform or config.LISTING_PLATFORM
        self._notes = notes

        self._live: Optional[CaptureSession] = None
        self._runs: dict[str, _Run] = {}
        self._uploads: dict[str, Optional[str]] = {}
        # Strong references so detached tasks are not garbage-collected mid-flight
        self._tasks: set[asyncio.Task] = set()

    @property
    def live_session(self) -> Optional[CaptureSession]:
        return self._live

    # ── Phase bookkeeping ─────────────────────────────────────────────────────

    def _transition(self, session: CaptureSession, target: ScanPhase) -> None:
        if target not in _TRANSITIONS[session.phase]:
            raise PhaseError(
                f"Session {session.session_id}: illegal transition "
                f"{session.phase.value} → {target.value}"
            )
        logger.debug("Session %s: %s → %s", session.session_id, session.phase.value, target.value)
        session.phase = target

    def _run_for(self, session: CaptureSession) -> _Run:
        run = self._runs.get(session.session_id)
        if run is None:
            raise PhaseError(f"Session {session.session_id} is not managed by this supervisor")
        return run

    def _is_current(self, session: CaptureSession) -> bool:
        run = self._runs.get(session.session_id)
        return run is not None and not run.discarded and not session.is_terminal

    def _publish(self, session: CaptureSession, final: bool = False) -> None:
        self.publisher.publish(ScanUpdate(
            session_id=session.session_id,
            phase=session.phase,
            result=session.live_result,
            background_active=session.background_active,
            final=final,
        ))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Public operations ─────────────────────────────────────────────────────

    def start_capture(self) -> CaptureSession:
        """IDLE → SCANNING for a fresh session; the previous live session is discarded."""
        if self._live is not None:
            self.discard(self._live)

        session = CaptureSession(session_id=uuid.uuid4().hex[:12])
        self._runs[session.session_id] = _Run()
        self._transition(session, ScanPhase.SCANNING)
        self._live = session
        logger.info("Session %s: capture started", session.session_id)
        self._publish(session)
        return session

    async def submit_frame(
        self,
        session: CaptureSession,
        raw_image: bytes,
        scanned_code: Optional[str] = None,
    ) -> CaptureSession:
        """
        Pre-process the frame, identify it and publish the provisional result.

        Returns once the session has left IDENTIFYING; the background phase
        keeps running on its own task.  Use wait() for the final result.
        """
        if session.phase != ScanPhase.SCANNING:
            raise PhaseError(f"Session {session.session_id}: frame submitted in phase {session.phase.value}")
        run = self._run_for(session)
        session.raw_image = raw_image
        session.scanned_code = scanned_code

        processed = await preprocess(raw_image, timeout=self.timeouts.preprocess)
        if run.discarded:
            logger.info("Session %s discarded during pre-processing", session.session_id)
            return session

        session.processed_image = processed
        self._transition(session, ScanPhase.IDENTIFYING)
        run.watchdog = asyncio.get_running_loop().call_later(
            self.timeouts.watchdog, self._on_watchdog, session,
        )
        self._publish(session)

        if self._object_store is not None:
            self._spawn(self._upload(session.session_id, processed))

        try:
            ident = await identification.identify(
                self._recognizer, processed, scanned_code, timeout=self.timeouts.identify,
            )
        except Exception as exc:
            logger.error("Session %s: identification raised: %s", session.session_id, exc)
            ident = identification.fallback_identification(scanned_code)
            if not ident.title:
                self._fail(session, run, exc)
                return session

        if not self._is_current(session):
            logger.info("Session %s: identification result discarded (%s)", session.session_id, session.phase.value)
            return session

        provisional = from_identification(ident)
        session.provisional_result = provisional
        session.live_result = provisional
        self._transition(session, ScanPhase.BACKGROUND_ENRICHING)
        session.background_active = True
        self._publish(session)

        self._spawn(self._background(session, ident))
        return session

    async def wait(self, session: CaptureSession):
        """Block until the session is terminal (or discarded); return the final result."""
        run = self._run_for(session)
        await run.done.wait()
        return session.final_result

    async def scan(self, raw_image: bytes, scanned_code: Optional[str] = None):
        """Capture → complete in one call.  Returns the final AnalysisResult."""
        session = self.start_capture()
        run = self._run_for(session)
        submit = self._spawn(self.submit_frame(session, raw_image, scanned_code))
        finished = asyncio.ensure_future(run.done.wait())
        try:
            # The watchdog may complete the session while identification is still pending
            await asyncio.wait({submit, finished}, return_when=asyncio.FIRST_COMPLETED)
            if submit.done() and not submit.cancelled() and submit.exception() is not None:
                raise submit.exception()
            await finished
        finally:
            finished.cancel()
        return session.final_result

    def stop(self, session: CaptureSession) -> bool:
        """Manual unlock: force COMPLETE with whatever has accumulated."""
        if session.is_terminal:
            return False
        if session.phase not in (ScanPhase.IDENTIFYING, ScanPhase.BACKGROUND_ENRICHING):
            raise PhaseError(f"Session {session.session_id}: cannot stop from {session.phase.value}")
        return self._complete(session, reason="manual stop")

    def discard(self, session: CaptureSession) -> None:
        """Forget a session; anything still in flight for it is dropped on arrival."""
        run = self._runs.pop(session.session_id, None)
        if run is None:
            return
        run.discarded = True
        if run.watchdog is not None:
            run.watchdog.cancel()
        self._uploads.pop(session.session_id, None)
        session.background_active = False
        run.done.set()
        self.publisher.forget(session.session_id)
        if self._live is session:
            self._live = None
        logger.info("Session %s discarded (%s)", session.session_id, session.phase.value)

    def take_upload(self, session_id: str) -> Optional[str]:
        """
        Persisted image URL for a session, consumed at save time.
        None means not uploaded (yet, or at all): keep the local encoded copy.
        """
        return self._uploads.pop(session_id, None)

    async def flush(self, timeout: float = 5.0) -> None:
        """Give detached tasks (uploads, late background work) a chance to settle."""
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.info("%d detached task(s) still running after %.1fs", len(still_running), timeout)

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _upload(self, session_id: str, image: bytes) -> None:
        try:
            url = await self._object_store.upload(image)
        except Exception as exc:
            logger.warning("Session %s: image upload failed: %s", session_id, exc)
            url = None
        if session_id not in self._runs:
            logger.info("Session %s: upload finished after discard, dropped", session_id)
            return
        if url is None:
            logger.info("Session %s: no remote copy, local image kept", session_id)
        self._uploads[session_id] = url

    def _fold(self, session: CaptureSession, patch: Optional[PartialResult], stage: str) -> None:
        """Merge one stage's patch into the live result as soon as it lands."""
        if not self._is_current(session):
            logger.info("Session %s: %s result arrived after %s — discarded",
                        session.session_id, stage, session.phase.value)
            return
        if patch is None or patch.is_empty():
            return
        session.live_result = merge(session.live_result, patch)
        self._publish(session)

    async def _enrich(self, session: CaptureSession, title: str) -> None:
        patch = await deep_analysis.enrich(
            self._recognizer, session.processed_image, title, timeout=self.timeouts.enrich,
        )
        self._fold(session, patch, "deep analysis")

    async def _research(self, session: CaptureSession, title: str, search_query: str, condition: str) -> None:
        research = await market_research.research(
            self._market, self._describer, title, search_query,
            condition=condition, notes=self._notes, platform=self._platform,
            timeout=self.timeouts.market,
        )
        self._fold(session, research.to_patch(), "market research")

    async def _background(self, session: CaptureSession, ident: Identification) -> None:
        try:
            if ident.search_query:
                await asyncio.gather(
                    self._enrich(session, ident.title),
                    self._research(session, ident.title, ident.search_query, session.live_result.condition),
                )
            else:
                # Nothing to search for yet; let deep analysis name the item first
                await self._enrich(session, ident.title)
                if not self._is_current(session):
                    return
                live = session.live_result
                if live.search_query and live.title != FALLBACK_TITLE:
                    await self._research(session, live.title, live.search_query, live.condition)
                else:
                    logger.info("Session %s: no usable query, market research skipped", session.session_id)
        except Exception:
            logger.exception("Session %s: background phase crashed", session.session_id)

        if not self._is_current(session):
            logger.info("Session %s: background joined after %s", session.session_id, session.phase.value)
            return
        self._complete(session, reason="background joined")

    def _on_watchdog(self, session: CaptureSession) -> None:
        if not self._is_current(session):
            return
        logger.warning(
            "Session %s: watchdog fired after %.1fs in %s — forcing completion",
            session.session_id, self.timeouts.watchdog, session.phase.value,
        )
        self._complete(session, reason="watchdog")

    def _complete(self, session: CaptureSession, reason: str) -> bool:
        run = self._runs.get(session.session_id)
        if run is None or run.discarded:
            return False
        # Disarm first so the watchdog can never fire after a legitimate finish
        if run.watchdog is not None:
            run.watchdog.cancel()
            run.watchdog = None
        if session.is_terminal:
            return False

        self._transition(session, ScanPhase.COMPLETE)
        session.background_active = False
        final = apply_fallbacks(merge(session.live_result, None))
        session.live_result = final
        session.final_result = final
        logger.info("Session %s complete (%s): '%s'", session.session_id, reason, final.title)
        self._publish(session, final=True)
        run.done.set()
        return True

    def _fail(self, session: CaptureSession, run: _Run, exc: BaseException) -> None:
        if run.watchdog is not None:
            run.watchdog.cancel()
            run.watchdog = None
        if session.is_terminal or run.discarded:
            return
        logger.critical(
            "Session %s: identification failed with no usable title — this is a bug: %s",
            session.session_id, exc,
        )
        self._transition(session, ScanPhase.FAILED)
        session.background_active = False
        session.final_result = session.live_result
        self._publish(session, final=True)
        run.done.set()
