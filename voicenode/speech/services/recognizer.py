from __future__ import annotations
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

try:
    from vosk import Model, KaldiRecognizer
except Exception:  # soft dependency, reported by compile_constraints
    Model = None  # type: ignore
    KaldiRecognizer = None  # type: ignore

from .audio_capture import AudioCapture
from .errors import EngineStateError

logger = logging.getLogger("speech.engine")

_MODULE_ROOT = Path(__file__).resolve().parents[1]  # .../voicenode/speech

DEFAULT_LANGUAGE_MODELS: Dict[str, str] = {
    "de-de": "models/vosk-de",
    "de": "models/vosk-de",
    "en-us": "models/vosk-en-us",
    "en": "models/vosk-en",
}


class RecognizerState(str, Enum):
    IDLE = "Idle"
    CAPTURING = "Capturing"
    SPEECH_DETECTED = "SpeechDetected"
    PROCESSING = "Processing"


class Confidence(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    REJECTED = "Rejected"


class Scenario(str, Enum):
    WEB_SEARCH = "WebSearch"
    DICTATION = "Dictation"


class CompilationStatus(str, Enum):
    SUCCESS = "Success"
    ENGINE_UNAVAILABLE = "EngineUnavailable"
    MODEL_NOT_FOUND = "ModelNotFound"
    GRAMMAR_COMPILATION_FAILURE = "GrammarCompilationFailure"
    NO_CONSTRAINTS = "NoConstraints"


@dataclass
class CompilationResult:
    status: CompilationStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is CompilationStatus.SUCCESS

    def __str__(self) -> str:
        return f"{self.status.value} ({self.detail})" if self.detail else self.status.value


@dataclass
class ListConstraint:
    phrases: List[str]
    tag: str = "list"


@dataclass
class TopicConstraint:
    scenario: Scenario
    hint: str = ""


Constraint = Union[ListConstraint, TopicConstraint]


@dataclass
class RecognizerTimeouts:
    initial_silence_s: float = 2.0
    end_silence_s: float = 0.5


@dataclass
class RecognitionResult:
    text: str
    confidence: Confidence
    score: Optional[float] = None


@dataclass
class EngineConfig:
    model_path: Optional[str] = None
    language_models: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_LANGUAGE_MODELS))
    samplerate: int = 16000
    high_confidence: float = 0.85
    medium_confidence: float = 0.6


StateHandler = Callable[["SpeechEngine", RecognizerState], None]
ResultHandler = Callable[["SpeechEngine", RecognitionResult], None]


@lru_cache(maxsize=4)
def _load_model(path: str) -> Any:
    logger.info("Loading vosk model %s", path)
    return Model(path)


class SpeechEngine:
    """Continuous recogniser on top of vosk and a microphone stream.

    Constraints are compiled into either an open vocabulary (when a topic
    constraint is present) or a phrase grammar. A session runs in a worker
    thread; state changes and results are reported through ``on_state_changed``
    and ``on_result`` from that thread.
    """

    def __init__(
        self,
        cfg: Dict,
        audio_cfg: Optional[Dict] = None,
        locale: str = "de-DE",
        capture_factory: Callable[[Dict], AudioCapture] = AudioCapture,
    ):
        confidence = cfg.get("confidence", {}) or {}
        self.cfg = EngineConfig(
            model_path=cfg.get("model_path"),
            language_models=dict(cfg.get("language_models") or DEFAULT_LANGUAGE_MODELS),
            samplerate=int(cfg.get("samplerate", 16000)),
            high_confidence=float(confidence.get("high", 0.85)),
            medium_confidence=float(confidence.get("medium", 0.6)),
        )
        self.locale = locale
        self.timeouts = RecognizerTimeouts()
        self.constraints: List[Constraint] = []
        self.on_state_changed: Optional[StateHandler] = None
        self.on_result: Optional[ResultHandler] = None

        self._audio_cfg = dict(audio_cfg or {})
        self._audio_cfg.setdefault("samplerate", self.cfg.samplerate)
        self._capture_factory = capture_factory
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._state = RecognizerState.IDLE
        self._model: Any = None
        self._grammar: Optional[str] = None
        self._compiled = False
        self._capture: Optional[AudioCapture] = None
        self._worker: Optional[threading.Thread] = None

    @property
    def state(self) -> RecognizerState:
        return self._state

    def _resolve_model_path(self) -> str:
        path = self.cfg.model_path
        if not path:
            lang = (self.locale or "").lower()
            mapping = self.cfg.language_models
            path = mapping.get(lang) or mapping.get(lang.split("-")[0], "")
        if path and not os.path.isabs(path):
            path = str((_MODULE_ROOT / path).resolve())
        return path

    def _new_recognizer(self) -> Any:
        if self._grammar is None:
            rec = KaldiRecognizer(self._model, self.cfg.samplerate)
        else:
            rec = KaldiRecognizer(self._model, self.cfg.samplerate, self._grammar)
        rec.SetWords(True)
        return rec

    def compile_constraints(self) -> CompilationResult:
        self._compiled = False
        if not self.constraints:
            return CompilationResult(CompilationStatus.NO_CONSTRAINTS)
        if Model is None or KaldiRecognizer is None:
            return CompilationResult(CompilationStatus.ENGINE_UNAVAILABLE, "vosk is not installed")
        path = self._resolve_model_path()
        if not path or not os.path.isdir(path):
            return CompilationResult(CompilationStatus.MODEL_NOT_FOUND, path or self.locale)

        if any(isinstance(c, TopicConstraint) for c in self.constraints):
            grammar = None
        else:
            phrases = [p.lower() for c in self.constraints for p in c.phrases]
            grammar = json.dumps(phrases + ["[unk]"], ensure_ascii=False)
        try:
            self._model = _load_model(path)
            self._grammar = grammar
            self._new_recognizer()
        except Exception as exc:
            return CompilationResult(CompilationStatus.GRAMMAR_COMPILATION_FAILURE, str(exc))
        self._compiled = True
        return CompilationResult(CompilationStatus.SUCCESS, "open vocabulary" if grammar is None else "phrase grammar")

    def start_continuous(self) -> None:
        """Open the microphone and start a session.

        Raises EngineStateError when not compiled or already running and
        PolicyDeniedError when the platform blocks the audio device.
        """
        worker = self._worker
        if worker is not None and worker.is_alive() and self._state is RecognizerState.IDLE:
            # session ended and the worker is in its last few statements
            worker.join(timeout=1.0)
        with self._lock:
            if not self._compiled:
                raise EngineStateError("constraints are not compiled")
            if self._state is not RecognizerState.IDLE or (self._worker is not None and self._worker.is_alive()):
                raise EngineStateError(f"session already active ({self._state.value})")
            capture = self._capture_factory(self._audio_cfg)
            capture.start()
            rec = self._new_recognizer()
            self._capture = capture
            self._stop_event.clear()
            self._state = RecognizerState.CAPTURING
            self._worker = threading.Thread(
                target=self._run_session, args=(capture, rec), daemon=True, name="speech-session"
            )
        self._emit_state(RecognizerState.CAPTURING)
        self._worker.start()

    def _run_session(self, capture: AudioCapture, rec: Any) -> None:
        timeouts = self.timeouts
        last_speech = time.monotonic()
        partial = ""
        partial_at = last_speech
        try:
            for chunk in capture.stream():
                if self._stop_event.is_set():
                    break
                now = time.monotonic()
                if rec.AcceptWaveform(chunk):
                    self._finish_utterance(json.loads(rec.Result()))
                    partial = ""
                    last_speech = now
                    continue
                current = json.loads(rec.PartialResult()).get("partial", "")
                if current:
                    last_speech = now
                    if current != partial:
                        partial, partial_at = current, now
                        self._set_state(RecognizerState.SPEECH_DETECTED)
                    elif now - partial_at >= timeouts.end_silence_s:
                        self._finish_utterance(json.loads(rec.FinalResult()))
                        partial = ""
                elif now - last_speech >= timeouts.initial_silence_s:
                    logger.debug("No speech for %.1fs, session ends", timeouts.initial_silence_s)
                    break
        except Exception:
            logger.exception("Recognition session failed")
        finally:
            capture.stop()
            self._set_state(RecognizerState.IDLE)

    def _finish_utterance(self, data: Dict[str, Any]) -> None:
        self._set_state(RecognizerState.PROCESSING)
        result = self.to_result(data)
        if result.text:
            self._emit_result(result)
        self._set_state(RecognizerState.CAPTURING)

    def to_result(self, data: Dict[str, Any]) -> RecognitionResult:
        text = " ".join(w for w in str(data.get("text", "")).split() if w != "[unk]")
        scores = [float(w.get("conf", 0.0)) for w in (data.get("result") or []) if w.get("word") != "[unk]"]
        score = sum(scores) / len(scores) if scores else None
        return RecognitionResult(text=text, confidence=self._classify(text, score), score=score)

    def _classify(self, text: str, score: Optional[float]) -> Confidence:
        if not text:
            return Confidence.REJECTED
        if score is None:
            return Confidence.MEDIUM
        if score >= self.cfg.high_confidence:
            return Confidence.HIGH
        if score >= self.cfg.medium_confidence:
            return Confidence.MEDIUM
        if score > 0.0:
            return Confidence.LOW
        return Confidence.REJECTED

    def _set_state(self, state: RecognizerState) -> None:
        with self._lock:
            if self._state is state:
                return
            self._state = state
        self._emit_state(state)

    def _emit_state(self, state: RecognizerState) -> None:
        handler = self.on_state_changed
        if handler is None:
            return
        try:
            handler(self, state)
        except Exception:
            logger.exception("State handler failed")

    def _emit_result(self, result: RecognitionResult) -> None:
        handler = self.on_result
        if handler is None:
            return
        try:
            handler(self, result)
        except Exception:
            logger.exception("Result handler failed")

    def stop(self) -> None:
        self._stop_event.set()
        capture = self._capture
        if capture is not None:
            capture.stop()
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=2.0)
            if worker.is_alive():
                logger.warning("Recognition session did not end within 2s")

    def dispose(self) -> None:
        self.on_state_changed = None
        self.on_result = None
        self.stop()
        self._capture = None
        self._model = None
        self._compiled = False
