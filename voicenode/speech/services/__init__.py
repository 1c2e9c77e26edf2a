from .audio_capture import AudioCapture
from .errors import EngineError, EngineStateError, PolicyDeniedError
from .recognizer import Confidence, RecognitionResult, RecognizerState, SpeechEngine
from .vocabulary import PhraseCommand, Vocabulary
from .watchdog import CheckOutcome, RecognitionWatchdog

__all__ = [
    "AudioCapture",
    "CheckOutcome",
    "Confidence",
    "EngineError",
    "EngineStateError",
    "PhraseCommand",
    "PolicyDeniedError",
    "RecognitionResult",
    "RecognitionWatchdog",
    "RecognizerState",
    "SpeechEngine",
    "Vocabulary",
]
