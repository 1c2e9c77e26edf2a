from __future__ import annotations
"""
Voice node launcher
- central logging first
- speech app creation
- uvicorn server
"""
import os
import sys

import uvicorn

# Make the project root importable when the script is run directly
ROOT = os.path.dirname(os.path.abspath(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


def main() -> None:
    from voicenode.logwrapper import init_logging
    init_logging()

    from voicenode.speech.xSpeechService import VoiceNodeService, create_app

    # VOICENODE_CONFIG and the BROKER_* variables are honoured by the loader
    service = VoiceNodeService()
    app = create_app(service=service)

    server = service.cfg.get("server", {}) or {}
    uvicorn.run(app, host=str(server.get("host", "0.0.0.0")), port=int(server.get("port", 8090)))


if __name__ == "__main__":
    main()
