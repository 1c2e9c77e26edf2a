from __future__ import annotations
import asyncio
import contextlib
import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from voicenode.broker.services.client import BrokerClient, BrokerCredentials
from voicenode.broker.services.commands import SET_LOG_LEVEL_TOPIC, Command, CommandType, SetLogLevel
from voicenode.logwrapper import apply_log_level
from voicenode.result import Result

from .errors import EngineStateError, PolicyDeniedError
from .recognizer import (
    Confidence,
    ListConstraint,
    RecognitionResult,
    RecognizerState,
    RecognizerTimeouts,
    Scenario,
    SpeechEngine,
    TopicConstraint,
)
from .vocabulary import Vocabulary, commands_from_config

logger = logging.getLogger("speech.watchdog")

EngineFactory = Callable[[str], SpeechEngine]

_ACCEPTED = (Confidence.HIGH, Confidence.MEDIUM)


class CheckOutcome(str, Enum):
    HEALTHY = "Healthy"
    LISTENING = "Listening"
    COMPILE_FAILED = "CompileFailed"
    START_FAILED = "StartFailed"
    BUSY = "Busy"


class WatchdogState(str, Enum):
    NO_SESSION = "NoSession"
    COMPILING = "Compiling"
    LISTENING = "Listening"
    IDLE = "Idle"


@dataclass
class WatchdogConfig:
    initial_delay_s: float = 1.0
    interval_s: float = 60.0
    stale_after_s: float = 30.0
    locale: str = "de-DE"
    initial_silence_s: float = 2.0
    end_silence_s: float = 0.5
    phrases: List[str] = field(default_factory=lambda: ["Licht an", "Licht aus"])
    web_search_fallback: bool = True


class RecognitionWatchdog:
    """Keeps one continuous recognition session alive and publishes matched phrases.

    A session counts as healthy while some engine went idle within the last
    ``stale_after_s`` seconds. The guard task checks that every ``interval_s``
    and recreates the engine otherwise; idle transitions re-arm listening
    immediately in between.

    Engine callbacks arrive on worker threads and are bridged onto the event
    loop, so all watchdog state is only touched from the loop.
    """

    def __init__(
        self,
        cfg: Dict,
        broker: BrokerClient,
        engine_factory: EngineFactory,
        clock: Callable[[], float] = time.monotonic,
    ):
        wd = cfg.get("watchdog", {}) or {}
        rec = cfg.get("recognition", {}) or {}
        self.cfg = WatchdogConfig(
            initial_delay_s=float(wd.get("initial_delay_s", 1.0)),
            interval_s=float(wd.get("interval_s", 60.0)),
            stale_after_s=float(wd.get("stale_after_s", 30.0)),
            locale=str(rec.get("locale", "de-DE")),
            initial_silence_s=float(rec.get("initial_silence_timeout_s", 2.0)),
            end_silence_s=float(rec.get("end_silence_timeout_s", 0.5)),
            phrases=[str(p) for p in rec.get("phrases", ["Licht an", "Licht aus"])],
            web_search_fallback=bool(rec.get("web_search_fallback", True)),
        )
        self._commands = commands_from_config(cfg.get("commands"))
        self.hotword = str(cfg.get("hotword", ""))
        self._vocabulary = Vocabulary(self.hotword, self._commands)
        self._broker = broker
        self._engine_factory = engine_factory
        self._clock = clock
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._engine: Optional[SpeechEngine] = None
        self._last_activity: Optional[float] = None
        self._in_flight = 0
        self._checking = False
        self._compiling = False
        self._guard: Optional[asyncio.Task] = None
        self.last_result: Optional[Dict[str, Any]] = None

    @property
    def engine(self) -> Optional[SpeechEngine]:
        return self._engine

    @property
    def last_activity(self) -> Optional[float]:
        return self._last_activity

    @property
    def processing(self) -> bool:
        return self._in_flight > 0

    async def start(self, broker_address: str, credentials: BrokerCredentials, hotword: str) -> Result[None]:
        """Connect to the broker and arm the periodic health check."""
        self.hotword = hotword
        self._vocabulary = Vocabulary(hotword, self._commands)
        self._loop = asyncio.get_running_loop()

        result = await self._broker.connect(broker_address, credentials)
        if not result.ok:
            logger.error("Broker connection failed: %s", result.error)
        self._broker.subscribe(SET_LOG_LEVEL_TOPIC, self._on_set_log_level)

        if self._guard is None or self._guard.done():
            self._guard = asyncio.create_task(self._guard_loop(), name="speech-watchdog")
        return result

    async def _guard_loop(self) -> None:
        await asyncio.sleep(self.cfg.initial_delay_s)
        while True:
            result = await self.health_check()
            if result.ok:
                logger.debug("Health check: %s", result.value.value)
            await asyncio.sleep(self.cfg.interval_s)

    def _on_set_log_level(self, payload: Dict[str, Any]) -> None:
        try:
            msg = SetLogLevel.model_validate(payload)
            apply_log_level(msg.Level)
        except ValueError as exc:
            logger.warning("Ignoring SetLogLevel message: %s", exc)

    def is_healthy(self) -> bool:
        if self._last_activity is None:
            return False
        return self._clock() - self._last_activity < self.cfg.stale_after_s

    async def health_check(self) -> Result[CheckOutcome]:
        """Recreate and restart the engine unless it showed activity recently."""
        if self.is_healthy():
            return Result.success(CheckOutcome.HEALTHY)
        if self._checking:
            return Result.success(CheckOutcome.BUSY)
        self._checking = True
        try:
            await self._retire_engine()
            engine = self._create_engine()
            self._compiling = True
            try:
                compilation = await asyncio.to_thread(engine.compile_constraints)
            finally:
                self._compiling = False
            logger.debug("Speech recognition compile result: %s", compilation)
            if not compilation.ok:
                await self._retire_engine()
                return Result.success(CheckOutcome.COMPILE_FAILED)
            started = await self.listen()
            if not started.ok:
                return Result(value=CheckOutcome.START_FAILED, error=started.error)
            return Result.success(CheckOutcome.LISTENING)
        except Exception as exc:
            logger.exception("Health check failed")
            return Result.failure(exc)
        finally:
            self._checking = False

    def _create_engine(self) -> SpeechEngine:
        self._loop = asyncio.get_running_loop()
        engine = self._engine_factory(self.cfg.locale)
        engine.timeouts = RecognizerTimeouts(self.cfg.initial_silence_s, self.cfg.end_silence_s)
        engine.constraints.append(ListConstraint(list(self.cfg.phrases)))
        if self.cfg.web_search_fallback:
            engine.constraints.append(TopicConstraint(Scenario.WEB_SEARCH, "webSearch"))
        engine.on_state_changed = self._bridge_state
        engine.on_result = self._bridge_result
        self._engine = engine
        return engine

    async def _retire_engine(self) -> None:
        # detach first so events of the old engine are treated as stale
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            await asyncio.to_thread(engine.stop)
        except Exception:
            logger.exception("Stopping the recognizer failed")
        try:
            await asyncio.to_thread(engine.dispose)
        except Exception:
            logger.exception("Disposing the recognizer failed")

    async def listen(self) -> Result[bool]:
        """Start the continuous session if the current engine is idle."""
        engine = self._engine
        if engine is None or engine.state is not RecognizerState.IDLE:
            return Result.success(False)
        try:
            await asyncio.to_thread(engine.start_continuous)
        except PolicyDeniedError as exc:
            logger.warning("Policy error: %s", exc)
            return Result.failure(exc)
        except EngineStateError as exc:
            logger.debug("Listening not started: %s", exc)
            return Result.success(False)
        except Exception as exc:
            logger.exception("Starting the recognition session failed")
            return Result.failure(exc)
        return Result.success(True)

    async def on_state_changed(self, state: RecognizerState | str, engine: Optional[SpeechEngine] = None) -> Result[bool]:
        if engine is not None and engine is not self._engine:
            return Result.success(False)
        state = RecognizerState(state)
        logger.debug("Speech recognizer state: %s", state.value)
        if state is not RecognizerState.IDLE:
            return Result.success(False)
        self._last_activity = self._clock()
        if self.processing:
            return Result.success(False)
        return await self.listen()

    async def on_result(
        self,
        text: str,
        confidence: Confidence | str,
        engine: Optional[SpeechEngine] = None,
        score: Optional[float] = None,
    ) -> Result[Optional[str]]:
        """Publish the topic matching ``text``; returns the published topic."""
        if engine is not None and engine is not self._engine:
            return Result.success(None)
        if not text:
            return Result.success(None)
        confidence = Confidence(confidence)
        if confidence not in _ACCEPTED:
            logger.debug("Ignoring %s confidence input: %s", confidence.value, text)
            return Result.success(None)

        logger.debug("User input recognized: %s", text)
        self.last_result = {"text": text, "confidence": confidence.value, "score": score, "topic": None}
        self._in_flight += 1
        try:
            result = await self._dispatch(text)
        finally:
            self._in_flight -= 1

        # idle transitions were skipped while processing
        current = self._engine
        if self._in_flight == 0 and current is not None and current.state is RecognizerState.IDLE:
            await self.listen()
        return result

    async def _dispatch(self, text: str) -> Result[Optional[str]]:
        topic = self._vocabulary.match(text)
        if topic is None:
            return Result.success(None)
        sent = await self.publish(topic)
        if not sent.ok:
            logger.error("Publishing %s failed: %s", topic, sent.error)
            return Result.failure(sent.error)
        if self.last_result is not None:
            self.last_result["topic"] = topic
        return Result.success(topic)

    async def publish(self, topic: str) -> Result[None]:
        return await self._broker.send_command(Command(Type=CommandType.ACTION, Topic=topic))

    def _bridge_state(self, engine: SpeechEngine, state: RecognizerState) -> None:
        self._submit(self.on_state_changed, state, engine=engine)

    def _bridge_result(self, engine: SpeechEngine, result: RecognitionResult) -> None:
        self._submit(self.on_result, result.text, result.confidence, engine=engine, score=result.score)

    def _submit(self, handler: Callable[..., Coroutine[Any, Any, Result]], *args: Any, **kwargs: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        coro = handler(*args, **kwargs)
        try:
            fut = asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError:
            coro.close()
            return
        fut.add_done_callback(self._report)

    @staticmethod
    def _report(fut: Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.error("Recognizer event handler raised: %r", exc)
            return
        result = fut.result()
        if isinstance(result, Result) and not result.ok:
            logger.debug("Recognizer event ended with error: %s", result.error)

    def status(self) -> Dict[str, Any]:
        engine = self._engine
        if self._compiling:
            state = WatchdogState.COMPILING
        elif engine is None:
            state = WatchdogState.NO_SESSION
        elif engine.state is RecognizerState.IDLE:
            state = WatchdogState.IDLE
        else:
            state = WatchdogState.LISTENING
        age = None if self._last_activity is None else round(self._clock() - self._last_activity, 3)
        return {
            "state": state.value,
            "engine_state": engine.state.value if engine is not None else None,
            "last_activity_age_s": age,
            "processing": self.processing,
            "hotword": self.hotword,
            "broker_connected": self._broker.is_connected,
            "last_result": self.last_result,
        }

    async def shutdown(self) -> None:
        guard, self._guard = self._guard, None
        if guard is not None:
            guard.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await guard
        await self._retire_engine()
        await self._broker.close()
