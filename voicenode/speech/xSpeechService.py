from __future__ import annotations
import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI

from voicenode.broker.services.client import BrokerClient, BrokerCredentials
from voicenode.logwrapper import disable_remote_logging, enable_remote_logging, get_router as get_log_router, init_logging
from voicenode.result import Result
from voicenode.speech.config_loader import load_config
from voicenode.speech.services.recognizer import SpeechEngine
from voicenode.speech.services.watchdog import EngineFactory, RecognitionWatchdog

logger = logging.getLogger("speech")


class VoiceNodeService:
    """Wires broker client, engine factory and watchdog from one config."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
        broker: Optional[BrokerClient] = None,
        engine_factory: Optional[EngineFactory] = None,
    ):
        self.cfg = load_config(config_path, overrides)
        self.broker = broker or BrokerClient(self.cfg.get("broker", {}))
        rec_cfg = self.cfg.get("recognition", {}) or {}
        audio_cfg = self.cfg.get("audio", {}) or {}
        factory = engine_factory or (lambda locale: SpeechEngine(rec_cfg, audio_cfg, locale=locale))
        self.watchdog = RecognitionWatchdog(self.cfg, self.broker, factory)
        self._started = False

    def credentials(self) -> BrokerCredentials:
        b = self.cfg.get("broker", {}) or {}
        return BrokerCredentials(
            user=str(b.get("user", "")),
            password=str(b.get("password") or ""),
            secret=str(b.get("secret") or ""),
        )

    async def start(self) -> Result[None]:
        if self._started:
            return Result.success()
        log_cfg = self.cfg.get("logging", {}) or {}
        enable_remote_logging(
            self.broker.publish_nowait,
            loggers=log_cfg.get("remote_loggers"),
            level=log_cfg.get("remote_level", "DEBUG"),
        )
        address = str((self.cfg.get("broker", {}) or {}).get("address", "localhost"))
        result = await self.watchdog.start(address, self.credentials(), str(self.cfg.get("hotword", "")))
        self._started = True
        return result

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.watchdog.shutdown()
        disable_remote_logging()

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()


def create_app(config_path: str | None = None, service: VoiceNodeService | None = None) -> FastAPI:
    """FastAPI app factory for the speech node."""
    service = service or VoiceNodeService(config_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title="Voice Node", lifespan=lifespan)
    app.state.service = service  # type: ignore[attr-defined]
    from voicenode.speech.api.router import get_router  # local import to avoid circular
    app.include_router(get_router(service))
    app.include_router(get_log_router())

    return app


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(description="Speech command node")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yml")
    parser.add_argument("--api", action="store_true", help="Run FastAPI server using config server.host/port")
    parser.add_argument("--broker", type=str, default=None, help="Broker address (host[:port])")
    parser.add_argument("--user", type=str, default=None, help="Broker user name")
    parser.add_argument("--password", type=str, default=None, help="Broker password")
    parser.add_argument("--secret", type=str, default=None, help="Shared secret sent on connect")
    parser.add_argument("--hotword", type=str, default=None, help="Phrase published as its own topic")
    args = parser.parse_args(argv)

    init_logging()
    overrides = {
        "hotword": args.hotword,
        "broker": {"address": args.broker, "user": args.user, "password": args.password, "secret": args.secret},
    }
    service = VoiceNodeService(args.config, overrides)

    if args.api:
        # Lazy import to avoid uvicorn dependency when not used
        import uvicorn

        server = service.cfg.get("server", {}) or {}
        uvicorn.run(
            create_app(service=service),
            host=str(server.get("host", "0.0.0.0")),
            port=int(server.get("port", 8090)),
        )
        return

    try:
        asyncio.run(service.run_forever())
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
