from __future__ import annotations
from typing import TYPE_CHECKING

from fastapi import APIRouter

if TYPE_CHECKING:
    from voicenode.speech.xSpeechService import VoiceNodeService


def get_router(service: VoiceNodeService) -> APIRouter:
    router = APIRouter(prefix="/speech", tags=["speech"])
    watchdog = service.watchdog

    @router.get("/healthz")
    async def healthz():
        return {"ok": True}

    @router.get("/status")
    async def status():
        return watchdog.status()

    @router.post("/check")
    async def check():
        result = await watchdog.health_check()
        return {
            "ok": result.ok,
            "outcome": result.value.value if result.value is not None else None,
            "error": str(result.error) if result.error is not None else None,
        }

    @router.get("/last")
    async def last_result():
        return watchdog.last_result or {}

    return router
