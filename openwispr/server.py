"""Background service for OpenWispr - hotkey owner and pipeline host.

The service registers the global hotkey and tells the capture surface when to
start and stop recording over ``/ws/events``. The surface sends the finished
clip over ``/ws/transcribe``; the service runs the pipeline and delivers the
text. Settings, history, dictionary and word stats are exposed over HTTP.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from openwispr.app import DictationCore
from openwispr.config import Config, Settings, looks_like_api_key
from openwispr.errors import DuplicateEntryError, EmptyAudio, TooShort
from openwispr.transcribe import PipelineResult
from openwispr.types import (
    ClipConfigMessage,
    EncodedClip,
    EventMessage,
    HealthCheck,
    TranscribeResponseMessage,
)

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "audio/webm"


class EventHub:
    """Fan-out of events to every connected capture surface."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()

    def __len__(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._clients.add(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)

    async def broadcast(self, message: EventMessage) -> None:
        for websocket in list(self._clients):
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("Dropping event client: %s", e)
                self._clients.discard(websocket)


class RemoteCaptureService(DictationCore):
    """Hotkey and pipeline owner whose microphone lives in the capture surface."""

    def __init__(
        self,
        config: Config | None = None,
        events: EventHub | None = None,
        platform: str | None = None,
    ) -> None:
        super().__init__(config, platform)
        self.events = events or EventHub()
        self._clip_waiter: asyncio.Future[tuple[EncodedClip, asyncio.Future[PipelineResult]]] | None = None
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    async def begin_capture(self, settings: Settings) -> None:
        await self.events.broadcast({"type": "recording-start"})

    async def end_capture(self, settings: Settings) -> PipelineResult | None:
        waiter = asyncio.get_running_loop().create_future()
        self._clip_waiter = waiter
        await self.events.broadcast({"type": "recording-stop"})
        try:
            clip, reply = await asyncio.wait_for(waiter, self._config.server.clip_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("No clip received within %.0fs", self._config.server.clip_timeout_s)
            return None
        finally:
            self._clip_waiter = None

        try:
            result = await self.process_clip(clip)
        except Exception as e:
            reply.set_exception(e)
            raise
        reply.set_result(result)
        return result

    async def submit_clip(self, clip: EncodedClip) -> PipelineResult:
        """Hand a clip from the capture surface to the pipeline."""
        waiter = self._clip_waiter
        if waiter is not None and not waiter.done():
            reply: asyncio.Future[PipelineResult] = asyncio.get_running_loop().create_future()
            waiter.set_result((clip, reply))
            return await reply

        # Recorded without the hotkey, e.g. click-to-record on the surface.
        async with self._lock:
            self._processing = True
            try:
                result = await self.process_clip(clip)
            finally:
                self._processing = False
        self.report(result, self.settings.get())
        return result

    async def process_clip(self, clip: EncodedClip) -> PipelineResult:
        if not clip.data:
            return PipelineResult.from_error(EmptyAudio("No audio data collected"))
        if len(clip) < self._config.pipeline.min_clip_bytes:
            return PipelineResult.from_error(TooShort(f"Clip of {len(clip)} bytes is too short"))
        return await self.pipeline.process(clip)

    def on_status(self, message: str) -> None:
        self._spawn(self.events.broadcast({"type": "status", "message": message}))

    def _spawn(self, coro: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class SettingsPatch(BaseModel):
    model_config = {"extra": "allow"}


class DictionaryEntryIn(BaseModel):
    original: str
    corrected: str
    case_sensitive: bool = False
    enabled: bool = True


class DictionaryEntryUpdate(BaseModel):
    original: str | None = None
    corrected: str | None = None
    case_sensitive: bool | None = None
    enabled: bool | None = None


class CorrectionRequest(BaseModel):
    original: str
    edited: str


class CorrectionAccept(BaseModel):
    original: str
    corrected: str


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    service: RemoteCaptureService = app.state.service
    watcher: asyncio.Task[None] | None = None

    if service.config.server.register_hotkeys:
        try:
            binding = service.start_hotkeys()
            logger.info("Listening for %s", binding.display())
            watcher = asyncio.create_task(service.watch_settings())
        except Exception as e:
            logger.error("Hotkey registration unavailable: %s", e)

    yield

    if watcher is not None:
        watcher.cancel()
    await service.aclose()


def _entry_response(entry: Any) -> dict[str, Any]:
    return entry.to_dict()


def create_app(config: Config | None = None, service: RemoteCaptureService | None = None) -> FastAPI:
    config = config or Config.from_env()
    service = service or RemoteCaptureService(config)

    app = FastAPI(
        title="OpenWispr Service",
        description="Push-to-talk dictation: hotkey, transcription and delivery",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    @app.exception_handler(DuplicateEntryError)
    async def duplicate_entry(request: Request, exc: DuplicateEntryError) -> JSONResponse:
        return JSONResponse({"detail": exc.reason}, status_code=409)

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        health: HealthCheck = {
            "status": "healthy",
            "hotkey_registered": service.hotkey_registered,
            "recording": service.is_recording,
        }
        return dict(health)

    @app.get("/settings")
    async def get_settings() -> dict[str, Any]:
        settings = service.settings.get()
        return {**settings.to_dict(), "api_key_valid": looks_like_api_key(settings.api_key)}

    @app.patch("/settings")
    async def patch_settings(patch: SettingsPatch) -> dict[str, Any]:
        try:
            settings = service.settings.set(patch.model_dump())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        service.apply_settings(settings)
        await service.events.broadcast({"type": "settings-changed"})
        return {**settings.to_dict(), "api_key_valid": looks_like_api_key(settings.api_key)}

    @app.delete("/settings")
    async def clear_settings() -> dict[str, Any]:
        service.settings.clear_all()
        await service.events.broadcast({"type": "settings-changed"})
        return service.settings.get().to_dict()

    @app.get("/history")
    async def get_history() -> list[dict[str, Any]]:
        return service.history.list()

    @app.delete("/history")
    async def clear_history() -> list[dict[str, Any]]:
        service.history.clear()
        return []

    @app.delete("/history/{record_id}")
    async def delete_history(record_id: str) -> list[dict[str, Any]]:
        return service.history.delete(record_id)

    @app.get("/dictionary")
    async def get_dictionary() -> list[dict[str, Any]]:
        return [_entry_response(e) for e in service.dictionary.list()]

    @app.post("/dictionary", status_code=201)
    async def add_dictionary_entry(body: DictionaryEntryIn) -> dict[str, Any]:
        try:
            entry = service.dictionary.add(
                body.original, body.corrected, body.case_sensitive, body.enabled
            )
        except DuplicateEntryError:
            raise
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return _entry_response(entry)

    @app.patch("/dictionary/{entry_id}")
    async def update_dictionary_entry(entry_id: str, body: DictionaryEntryUpdate) -> dict[str, Any]:
        changes = body.model_dump(exclude_none=True)
        try:
            entry = service.dictionary.update(entry_id, **changes)
        except KeyError as e:
            raise HTTPException(status_code=404, detail="Entry not found") from e
        except DuplicateEntryError:
            raise
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return _entry_response(entry)

    @app.post("/dictionary/{entry_id}/toggle")
    async def toggle_dictionary_entry(entry_id: str) -> dict[str, Any]:
        try:
            entry = service.dictionary.toggle(entry_id)
        except KeyError as e:
            raise HTTPException(status_code=404, detail="Entry not found") from e
        return _entry_response(entry)

    @app.delete("/dictionary/{entry_id}")
    async def delete_dictionary_entry(entry_id: str) -> list[dict[str, Any]]:
        return [_entry_response(e) for e in service.dictionary.delete(entry_id)]

    @app.get("/words")
    async def get_words() -> dict[str, int]:
        return dict(service.words.stats())

    @app.post("/corrections/suggest")
    async def suggest_correction(body: CorrectionRequest) -> dict[str, Any]:
        return {"suggestion": service.corrections.suggest(body.original, body.edited)}

    @app.post("/corrections/accept", status_code=201)
    async def accept_correction(body: CorrectionAccept) -> dict[str, Any]:
        entry = service.corrections.accept({"original": body.original, "corrected": body.corrected})
        return _entry_response(entry)

    @app.post("/recording/stop")
    async def stop_recording() -> dict[str, bool]:
        await service.stop_recording()
        return {"recording": service.is_recording}

    @app.websocket("/ws/events")
    async def websocket_events(websocket: WebSocket) -> None:
        await service.events.connect(websocket)
        logger.info("Capture surface connected (%d)", len(service.events))
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Capture surface disconnected")
        finally:
            service.events.disconnect(websocket)

    @app.websocket("/ws/transcribe")
    async def websocket_transcribe(websocket: WebSocket) -> None:
        client_id = id(websocket)
        await websocket.accept()
        logger.info("Transcribe client %s connected", client_id)

        mime_type = DEFAULT_MIME_TYPE
        try:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break

                if message.get("text") is not None:
                    try:
                        config_data: ClipConfigMessage = json.loads(message["text"])
                    except json.JSONDecodeError:
                        logger.warning("Ignoring malformed message from %s", client_id)
                        continue
                    if config_data.get("type") == "config":
                        mime_type = config_data.get("mime_type") or DEFAULT_MIME_TYPE
                        logger.info("Clip format: %s", mime_type)
                    continue

                data = message.get("bytes")
                if data is None:
                    continue
                logger.info("Received %d bytes of audio data", len(data))

                await websocket.send_json({"status": "processing"})
                result = await service.submit_clip(EncodedClip(data, mime_type))
                reply: TranscribeResponseMessage
                if result.delivers:
                    reply = {"status": "complete", "outcome": result.outcome.value, "text": result.text}
                else:
                    reply = {
                        "status": "error",
                        "outcome": result.outcome.value,
                        "message": result.status_message,
                    }
                await websocket.send_json(reply)
        except WebSocketDisconnect:
            logger.info("Transcribe client %s disconnected", client_id)

    return app


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="OpenWispr background service")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--no-hotkeys", action="store_true", help="Do not register the global hotkey")
    args = parser.parse_args(argv)
    serve(Config.from_env(), args.host, args.port, register_hotkeys=not args.no_hotkeys)
    return 0


def serve(
    config: Config,
    host: str | None = None,
    port: int | None = None,
    register_hotkeys: bool = True,
) -> None:
    import uvicorn

    config.server.host = host or config.server.host
    config.server.port = port or config.server.port
    config.server.register_hotkeys = config.server.register_hotkeys and register_hotkeys

    print(f"\n🚀 Starting OpenWispr service at http://{config.server.host}:{config.server.port}")
    print("   Press Ctrl+C to stop\n")

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if config.verbose else "info",
    )


if __name__ == "__main__":
    raise SystemExit(main())
