from __future__ import annotations

import asyncio
import logging

import pytest

from voicenode.broker.services.client import BrokerCredentials, BrokerNotConnectedError
from voicenode.broker.services.commands import SET_LOG_LEVEL_TOPIC, CommandType
from voicenode.logwrapper import xLogService
from voicenode.result import Result
from voicenode.speech.services.errors import PolicyDeniedError
from voicenode.speech.services.recognizer import (
    CompilationStatus,
    Confidence,
    ListConstraint,
    RecognizerState,
    Scenario,
    TopicConstraint,
)
from voicenode.speech.services.watchdog import CheckOutcome


def _published(broker):
    return [c.Topic for c in broker.sent]


# ---------------------------------------------------------------------------
# health check
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("age", [0.0, 10.0, 29.9])
def test_recent_activity_skips_recreation(make_watchdog, engines, clock, age):
    wd = make_watchdog()
    asyncio.run(wd.on_state_changed(RecognizerState.IDLE))
    clock.now += age

    result = asyncio.run(wd.health_check())

    assert result.ok
    assert result.value is CheckOutcome.HEALTHY
    assert engines.created == []


def test_first_check_creates_and_starts_engine(make_watchdog, engines):
    wd = make_watchdog()

    result = asyncio.run(wd.health_check())

    assert result.value is CheckOutcome.LISTENING
    assert len(engines.created) == 1
    engine = engines.created[0]
    assert engine.locale == "de-DE"
    assert engine.timeouts.initial_silence_s == pytest.approx(2.0)
    assert engine.timeouts.end_silence_s == pytest.approx(0.5)
    assert engine.constraints[0] == ListConstraint(["Licht an", "Licht aus"])
    assert engine.constraints[1] == TopicConstraint(Scenario.WEB_SEARCH, "webSearch")
    assert engine.compiled == 1
    assert engine.started == 1
    assert wd.status()["state"] == "Listening"


@pytest.mark.parametrize("age", [30.0, 45.0, 600.0])
def test_stale_activity_recreates_exactly_once(make_watchdog, engines, clock, age):
    wd = make_watchdog()

    async def scenario():
        await wd.health_check()
        await wd.on_state_changed(RecognizerState.IDLE, engine=engines.created[0])
        clock.now += age
        return await wd.health_check()

    result = asyncio.run(scenario())

    assert result.value is CheckOutcome.LISTENING
    assert len(engines.created) == 2
    old, new = engines.created
    assert old.stopped >= 1 and old.disposed
    assert new.compiled == 1
    assert new.started == 1
    assert wd.engine is new


def test_compile_failure_leaves_engine_stopped(make_watchdog, engines, caplog):
    caplog.set_level(logging.DEBUG, logger="speech.watchdog")
    engines.compile_status = CompilationStatus.MODEL_NOT_FOUND
    wd = make_watchdog()

    result = asyncio.run(wd.health_check())

    assert result.ok
    assert result.value is CheckOutcome.COMPILE_FAILED
    assert engines.created[0].started == 0
    assert engines.created[0].disposed
    assert wd.engine is None
    assert "compile result: ModelNotFound" in caplog.text
    assert wd.status()["state"] == "NoSession"


def test_policy_denial_is_a_warning(make_watchdog, engines, caplog):
    caplog.set_level(logging.DEBUG, logger="speech.watchdog")
    engines.start_error = PolicyDeniedError("audio device denied", code=-9985)
    wd = make_watchdog()

    result = asyncio.run(wd.health_check())

    assert not result.ok
    assert result.value is CheckOutcome.START_FAILED
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert warnings and "Policy error" in warnings[0].getMessage()
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


def test_other_start_errors_are_logged(make_watchdog, engines, caplog):
    engines.start_error = OSError("device vanished")
    wd = make_watchdog()

    result = asyncio.run(wd.health_check())

    assert isinstance(result.error, OSError)
    assert any(r.levelno == logging.ERROR for r in caplog.records)


def test_overlapping_checks_create_one_engine(make_watchdog, engines):
    wd = make_watchdog()

    async def scenario():
        return await asyncio.gather(wd.health_check(), wd.health_check())

    outcomes = sorted(r.value.value for r in asyncio.run(scenario()))

    assert outcomes == ["Busy", "Listening"]
    assert len(engines.created) == 1
    assert engines.created[0].started == 1


def test_stop_failure_does_not_block_recreation(make_watchdog, engines, clock):
    wd = make_watchdog()

    async def scenario():
        await wd.health_check()
        old = engines.created[0]

        def broken_stop():
            raise RuntimeError("stop failed")

        old.stop = broken_stop
        clock.now += 100
        return await wd.health_check()

    result = asyncio.run(scenario())

    assert result.value is CheckOutcome.LISTENING
    assert len(engines.created) == 2
    assert engines.created[0].disposed


# ---------------------------------------------------------------------------
# results
# ---------------------------------------------------------------------------

def test_hotword_published_once(make_watchdog, fake_broker):
    wd = make_watchdog()

    result = asyncio.run(wd.on_result("Hallo Dims", Confidence.HIGH))

    assert result.value == "Hallo Dims"
    assert _published(fake_broker) == ["Hallo Dims"]
    assert fake_broker.sent[0].Type is CommandType.ACTION


@pytest.mark.parametrize(
    "text, topic",
    [
        ("Licht an", "LivingRoomLightOn"),
        ("bitte LICHT AN im Wohnzimmer", "LivingRoomLightOn"),
        ("Licht aus", "LivingRoomLightOff"),
        ("mach das licht aus", "LivingRoomLightOff"),
    ],
)
def test_phrases_publish_fixed_topics(make_watchdog, fake_broker, text, topic):
    wd = make_watchdog()

    result = asyncio.run(wd.on_result(text, Confidence.MEDIUM))

    assert result.value == topic
    assert _published(fake_broker) == [topic]


@pytest.mark.parametrize(
    "text, confidence",
    [
        ("", Confidence.HIGH),
        ("Licht an", Confidence.LOW),
        ("Licht an", Confidence.REJECTED),
        ("Hallo Dims", "Low"),
    ],
)
def test_low_confidence_or_empty_never_publishes(make_watchdog, fake_broker, text, confidence):
    wd = make_watchdog()

    result = asyncio.run(wd.on_result(text, confidence))

    assert result.ok and result.value is None
    assert fake_broker.sent == []


def test_unmatched_text_publishes_nothing(make_watchdog, fake_broker):
    wd = make_watchdog()
    result = asyncio.run(wd.on_result("wie spät ist es", Confidence.HIGH))
    assert result.ok and result.value is None
    assert fake_broker.sent == []
    assert wd.last_result["text"] == "wie spät ist es"


def test_hotword_is_compared_verbatim(make_watchdog, fake_broker):
    wd = make_watchdog()
    asyncio.run(wd.on_result("hallo dims", Confidence.HIGH))
    assert fake_broker.sent == []


def test_publish_failure_surfaces_in_result(make_watchdog, fake_broker, caplog):
    fake_broker.send_result = Result.failure(BrokerNotConnectedError("offline"))
    wd = make_watchdog()

    result = asyncio.run(wd.on_result("Licht an", Confidence.HIGH))

    assert not result.ok
    assert isinstance(result.error, BrokerNotConnectedError)
    assert "Publishing LivingRoomLightOn failed" in caplog.text


# ---------------------------------------------------------------------------
# state transitions
# ---------------------------------------------------------------------------

def test_idle_records_activity_and_relistens(make_watchdog, engines, clock):
    wd = make_watchdog()

    async def scenario():
        await wd.health_check()
        engine = engines.created[0]
        engine.state = RecognizerState.IDLE
        clock.now = 1234.0
        return await wd.on_state_changed("Idle", engine=engine)

    result = asyncio.run(scenario())

    assert result.value is True
    assert wd.last_activity == 1234.0
    assert engines.created[0].started == 2


def test_non_idle_state_only_logs(make_watchdog, engines):
    wd = make_watchdog()

    async def scenario():
        await wd.health_check()
        return await wd.on_state_changed(RecognizerState.SPEECH_DETECTED, engine=engines.created[0])

    result = asyncio.run(scenario())

    assert result.value is False
    assert wd.last_activity is None


def test_idle_while_processing_defers_restart(make_watchdog, engines, fake_broker):
    wd = make_watchdog()
    seen = []

    async def scenario():
        await wd.health_check()
        engine = engines.created[0]

        async def during_send(command):
            engine.state = RecognizerState.IDLE
            r = await wd.on_state_changed(RecognizerState.IDLE, engine=engine)
            seen.append((wd.processing, r.value, engine.started))

        fake_broker.on_send = during_send
        await wd.on_result("Licht an", Confidence.HIGH, engine=engine)

    asyncio.run(scenario())

    assert seen == [(True, False, 1)]
    # re-armed once processing finished
    assert engines.created[0].started == 2
    assert wd.processing is False


def test_overlapping_results_keep_processing_until_the_last_one(make_watchdog, engines, fake_broker):
    wd = make_watchdog()
    gates = {"LivingRoomLightOn": asyncio.Event(), "LivingRoomLightOff": asyncio.Event()}

    async def gated(command):
        await gates[command.Topic].wait()

    async def scenario():
        await wd.health_check()
        engine = engines.created[0]
        fake_broker.on_send = gated
        first = asyncio.create_task(wd.on_result("Licht an", Confidence.HIGH, engine=engine))
        second = asyncio.create_task(wd.on_result("Licht aus", Confidence.HIGH, engine=engine))
        while len(fake_broker.sent) < 2:
            await asyncio.sleep(0)

        gates["LivingRoomLightOn"].set()
        await first
        engine.state = RecognizerState.IDLE
        r = await wd.on_state_changed(RecognizerState.IDLE, engine=engine)
        during = (wd.processing, r.value, engine.started)

        gates["LivingRoomLightOff"].set()
        await second
        return during

    during = asyncio.run(scenario())

    assert during == (True, False, 1)
    assert engines.created[0].started == 2
    assert wd.processing is False
    assert _published(fake_broker) == ["LivingRoomLightOn", "LivingRoomLightOff"]


def test_events_from_replaced_engine_are_ignored(make_watchdog, engines, fake_broker, clock):
    wd = make_watchdog()

    async def scenario():
        await wd.health_check()
        clock.now += 100
        await wd.health_check()
        old = engines.created[0]
        r1 = await wd.on_result("Licht an", Confidence.HIGH, engine=old)
        r2 = await wd.on_state_changed(RecognizerState.IDLE, engine=old)
        return r1, r2

    r1, r2 = asyncio.run(scenario())

    assert r1.value is None and r2.value is False
    assert fake_broker.sent == []
    assert wd.last_activity is None


def test_engine_callbacks_are_bridged_to_the_loop(make_watchdog, engines, fake_broker):
    wd = make_watchdog()

    async def scenario():
        await wd.health_check()
        engine = engines.created[0]
        from voicenode.speech.services.recognizer import RecognitionResult

        # engines call back from their worker thread
        await asyncio.to_thread(engine.on_result, engine, RecognitionResult("Licht aus", Confidence.HIGH, 0.9))
        for _ in range(50):
            if fake_broker.sent:
                break
            await asyncio.sleep(0.01)

    asyncio.run(scenario())

    assert _published(fake_broker) == ["LivingRoomLightOff"]


# ---------------------------------------------------------------------------
# start / guard
# ---------------------------------------------------------------------------

def test_start_connects_subscribes_and_arms_guard(make_watchdog, engines, fake_broker):
    wd = make_watchdog(watchdog={"initial_delay_s": 0.0, "interval_s": 3600})
    creds = BrokerCredentials(user="node", password="pw", secret="s3cret")

    async def scenario():
        result = await wd.start("broker.local:1883", creds, "Computer")
        for _ in range(100):
            if engines.created and engines.created[0].started:
                break
            await asyncio.sleep(0.01)
        await wd.shutdown()
        return result

    result = asyncio.run(scenario())

    assert result.ok
    assert fake_broker.connect_calls == [("broker.local:1883", creds)]
    assert SET_LOG_LEVEL_TOPIC in fake_broker.subscriptions
    assert len(engines.created) == 1 and engines.created[0].disposed
    assert fake_broker.closed
    assert wd.hotword == "Computer"


def test_guard_keeps_recreating_a_stale_session(make_watchdog, engines):
    wd = make_watchdog(watchdog={"initial_delay_s": 0.0, "interval_s": 0.01})

    async def scenario():
        await wd.start("broker.local", BrokerCredentials("node"), "Computer")
        for _ in range(300):
            if len(engines.created) >= 3:
                break
            await asyncio.sleep(0.01)
        await wd.shutdown()

    asyncio.run(scenario())

    assert len(engines.created) >= 3
    assert [e.started for e in engines.created[:2]] == [1, 1]
    assert all(e.disposed for e in engines.created)


def test_connect_failure_is_returned_and_guard_still_armed(make_watchdog, engines, fake_broker):
    fake_broker.connect_result = Result.failure(ConnectionRefusedError("refused"))
    wd = make_watchdog(watchdog={"initial_delay_s": 0.0, "interval_s": 3600})

    async def scenario():
        result = await wd.start("broker.local", BrokerCredentials("node"), "Computer")
        for _ in range(100):
            if engines.created:
                break
            await asyncio.sleep(0.01)
        await wd.shutdown()
        return result

    result = asyncio.run(scenario())

    assert isinstance(result.error, ConnectionRefusedError)
    assert len(engines.created) == 1


def test_set_log_level_message_adjusts_threshold(make_watchdog, fake_broker, monkeypatch):
    monkeypatch.setattr(xLogService, "_REMOTE_LOGGERS", ["speech"])
    speech_logger = logging.getLogger("speech")
    previous = speech_logger.level
    wd = make_watchdog(watchdog={"initial_delay_s": 3600})

    async def scenario():
        await wd.start("broker.local", BrokerCredentials("node"), "Computer")
        handler = fake_broker.subscriptions[SET_LOG_LEVEL_TOPIC]
        handler({"Level": "Warning"})
        level_after = speech_logger.level
        handler({"unexpected": True})
        await wd.shutdown()
        return level_after

    try:
        assert asyncio.run(scenario()) == logging.WARNING
    finally:
        speech_logger.setLevel(previous)
