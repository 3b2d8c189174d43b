#!/usr/bin/env python3
"""
aiohttp web server for live capture ingest and HLS playback.

Behavior:
- Capture clients hold a WebSocket on /ws and send start/chunk/stop
  messages. Closing the socket tears down every stream it started.
- The live encoder for a stream starts after a short warm-up; the watch
  endpoint serves its playlist with segment URLs made absolute.
- Timelapse renders are generated on first request and cached until the
  capture file changes.

Control messages (JSON text frames, {"event": ..., "data": {...}}):
  start-stream {userId, challengeNum}          -> stream-ready {streamKey}
  stream-chunk {userId, challengeNum, chunk}   (chunk is base64)
  stop-stream  {userId, challengeNum}          -> stream-stopped {streamKey}
  any failure                                  -> stream-error {error, message}

Endpoints:
  GET /                                   -> JSON {status, service, activeStreams}
  GET /healthz                            -> "ok"
  GET /stats                              -> JSON snapshot of active streams
  GET /ws                                 -> Control WebSocket
  GET /watch/<userId>/<challengeNum>      -> Live playlist (404 until ffmpeg writes one)
  GET /timelapse/<userId>/<challengeNum>  -> Timelapse playlist (202 while rendering)
  Static /recordings/*                    -> Session directories (segments + playlists)
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import binascii
import json
import logging
import signal
import uuid
import weakref
from pathlib import Path
from typing import Any, Mapping

from aiohttp import WSCloseCode, WSMsgType, web
from aiohttp.web import AppKey

from outback import config as config_module
from outback import ffmpeg_io
from outback.config import get_cfg
from outback.errors import (
    EncoderRuntimeError,
    InvalidMessageError,
    InvalidSessionKeyError,
    JobInProgressError,
    SourceMissingError,
    StreamingError,
)
from outback.manifest import resolve_scheme, rewrite_manifest, segment_base_url
from outback.session_registry import SessionKey
from outback.stream_controller import StreamController
from outback.timelapse import TimelapseGate

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"

SHUTDOWN_EVENT_KEY: AppKey[asyncio.Event] = web.AppKey("shutdown_event", asyncio.Event)
CONTROLLER_KEY: AppKey[StreamController] = web.AppKey("stream_controller", StreamController)
TIMELAPSE_GATE_KEY: AppKey[TimelapseGate] = web.AppKey("timelapse_gate", TimelapseGate)
SOCKETS_KEY: AppKey[weakref.WeakSet] = web.AppKey("control_sockets", weakref.WeakSet)


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    for name in ("aiohttp.access", "asyncio"):
        logging.getLogger(name).setLevel(level)


def _read_text(path: Path) -> str | None:
    try:
        # Bytes, not text mode: CRLF playlists must reach the rewriter intact.
        return path.read_bytes().decode("utf-8", errors="replace")
    except FileNotFoundError:
        return None


def _decode_chunk(raw: object) -> bytes:
    if not isinstance(raw, str) or not raw:
        raise InvalidMessageError("chunk must be a non-empty base64 string")
    # Data URLs ("data:video/webm;base64,....") are accepted as sent by FileReader.
    if raw.startswith("data:") and "," in raw:
        raw = raw.split(",", 1)[1]
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidMessageError(f"chunk is not valid base64: {exc}") from exc


def _ws_event(event: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {"event": event, "data": dict(data)}


def _ws_error(error: str, message: str) -> dict[str, Any]:
    return _ws_event("stream-error", {"error": error, "message": message})


def build_app(
    cfg: Mapping[str, Any] | None = None,
    *,
    controller: StreamController | None = None,
    timelapse_gate: TimelapseGate | None = None,
) -> web.Application:
    log = logging.getLogger("web_streamer")
    cfg = cfg if cfg is not None else get_cfg()
    server_cfg = config_module.section(cfg, "server")
    paths_cfg = config_module.section(cfg, "paths")
    ffmpeg_cfg = config_module.section(cfg, "ffmpeg")
    cors_origin = str(server_cfg.get("cors_origin") or "")
    service_name = str(server_cfg["service_name"])
    static_prefix = str(paths_cfg["static_prefix"]).strip("/")

    middlewares: list[Any] = []

    if cors_origin:

        def _apply_cors(headers) -> None:
            headers.setdefault("Access-Control-Allow-Origin", cors_origin)
            headers.setdefault("Access-Control-Allow-Methods", "GET,OPTIONS")
            headers.setdefault("Access-Control-Allow-Headers", "Content-Type")

        @web.middleware
        async def _cors_middleware(request: web.Request, handler):
            if request.method == "OPTIONS":
                response = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as exc:
                    # Error responses raised by handlers or the router.
                    _apply_cors(exc.headers)
                    raise

            # WebSocket responses have already sent their headers.
            if not response.prepared:
                _apply_cors(response.headers)
            return response

        middlewares.append(_cors_middleware)

    app = web.Application(middlewares=middlewares)
    if controller is None:
        controller = StreamController(cfg)
    if timelapse_gate is None:
        timelapse_gate = TimelapseGate(controller.recordings_root, cfg)
    app[CONTROLLER_KEY] = controller
    app[TIMELAPSE_GATE_KEY] = timelapse_gate
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()
    app[SOCKETS_KEY] = weakref.WeakSet()

    # --- Helpers bound to this app ---
    def _key_from_request(request: web.Request) -> SessionKey:
        return SessionKey.from_parts(
            request.match_info.get("user_id"), request.match_info.get("challenge_num")
        )

    def _not_found(key: SessionKey) -> web.Response:
        return web.json_response(
            {
                "error": "Recording not found",
                "message": f"No recording found for {key.user_id}/{key.challenge_num}",
                "userId": key.user_id,
                "challengeNum": key.challenge_num,
            },
            status=404,
        )

    def _manifest_response(request: web.Request, key: SessionKey, text: str, segment_prefix: str) -> web.Response:
        scheme = resolve_scheme(request.headers.get("X-Forwarded-Proto"), request.secure)
        base_url = segment_base_url(scheme, request.host, static_prefix, key.name)
        return web.Response(
            text=rewrite_manifest(text, base_url, segment_prefix),
            content_type=HLS_CONTENT_TYPE,
            headers={
                "Cache-Control": "no-cache",
                "Access-Control-Allow-Origin": "*",
            },
        )

    async def _read_playlist(path: Path) -> str | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _read_text, path)

    @web.middleware
    async def _invalid_key_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except InvalidSessionKeyError as exc:
            return web.json_response({"error": exc.code, "message": str(exc)}, status=400)

    app.middlewares.append(_invalid_key_middleware)

    # --- HTTP handlers ---
    async def health(_: web.Request) -> web.Response:
        return web.json_response(
            {"status": "ok", "service": service_name, "activeStreams": controller.active_count}
        )

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    async def stats(_: web.Request) -> web.Response:
        payload = controller.status()
        payload["service"] = service_name
        payload["timelapseJobs"] = timelapse_gate.status()
        return web.json_response(payload)

    async def watch(request: web.Request) -> web.Response:
        key = _key_from_request(request)
        text = await _read_playlist(controller.playlist_path(key))
        if text is None:
            return _not_found(key)
        return _manifest_response(request, key, text, controller.segment_prefix)

    async def timelapse(request: web.Request) -> web.Response:
        key = _key_from_request(request)
        result = await timelapse_gate.request(key)
        ids = {"userId": key.user_id, "challengeNum": key.challenge_num}
        try:
            path = result.raise_for_status()
            text = await _read_playlist(path)
            if text is None:
                # Removed between render and read; the next request re-renders.
                raise EncoderRuntimeError("Timelapse playlist disappeared")
        except SourceMissingError:
            return _not_found(key)
        except JobInProgressError:
            return web.json_response(
                {
                    "status": "generating",
                    "message": "Timelapse is being generated. Please retry in a few moments.",
                    **ids,
                },
                status=JobInProgressError.status,
            )
        except StreamingError as exc:
            return web.json_response(
                {"error": "Timelapse generation failed", "message": str(exc) or "unknown error", **ids},
                status=500,
            )
        return _manifest_response(request, key, text, timelapse_gate.segment_prefix)

    # --- Control channel ---
    def _handle_control_message(connection_id: str, raw: str) -> dict[str, Any] | None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            return _ws_error(InvalidMessageError.code, "message is not valid JSON")
        if not isinstance(message, dict):
            return _ws_error(InvalidMessageError.code, "message must be a JSON object")
        event = message.get("event")
        data = message.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return _ws_error(InvalidMessageError.code, "data must be a JSON object")

        try:
            if event == "stream-chunk":
                chunk = _decode_chunk(data.get("chunk"))
                controller.ingest_chunk(data.get("userId"), data.get("challengeNum"), chunk)
                return None
            if event == "start-stream":
                session = controller.start_stream(
                    data.get("userId"), data.get("challengeNum"), connection_id
                )
                return _ws_event("stream-ready", {"streamKey": session.key.name})
            if event == "stop-stream":
                key = SessionKey.from_parts(data.get("userId"), data.get("challengeNum"))
                log.info("Stopping stream: %s", key.name)
                controller.stop_stream(key.user_id, key.challenge_num)
                return _ws_event("stream-stopped", {"streamKey": key.name})
        except StreamingError as exc:
            log.warning("Rejected %s from %s: %s", event, connection_id, exc)
            return _ws_error(exc.code, str(exc))
        return _ws_error("unknown_event", f"unsupported event {event!r}")

    async def control_socket(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(
            heartbeat=float(server_cfg["ws_heartbeat_sec"]) or None,
            max_msg_size=int(server_cfg["ws_max_msg_size"]),
        )
        await ws.prepare(request)
        connection_id = uuid.uuid4().hex
        request.app[SOCKETS_KEY].add(ws)
        log.info("Client connected: %s", connection_id)
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    reply = _handle_control_message(connection_id, msg.data)
                    if reply is not None:
                        await ws.send_json(reply)
                elif msg.type == WSMsgType.BINARY:
                    await ws.send_json(
                        _ws_error(InvalidMessageError.code, "binary frames are not supported")
                    )
                elif msg.type == WSMsgType.ERROR:
                    log.warning("Control socket %s error: %r", connection_id, ws.exception())
        finally:
            torn_down = controller.disconnect(connection_id)
            log.info("Client disconnected: %s (%d stream(s) closed)", connection_id, torn_down)
        return ws

    # --- Lifecycle ---
    async def _check_ffmpeg(_: web.Application) -> None:
        if not ffmpeg_cfg.get("verify_on_startup", True):
            return
        path = ffmpeg_io.resolve_ffmpeg(ffmpeg_cfg.get("path"), ffmpeg_cfg.get("search_paths") or ())
        if path is None:
            log.error("Could not find an ffmpeg binary; live and timelapse encoding will fail")
            return
        log.info("FFmpeg path set to: %s", path)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, ffmpeg_io.verify_ffmpeg, path)

    async def _close_sockets(app_: web.Application) -> None:
        for ws in list(app_[SOCKETS_KEY]):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def _shutdown_streams(_: web.Application) -> None:
        await controller.shutdown()
        await timelapse_gate.shutdown()

    app.on_startup.append(_check_ffmpeg)
    app.on_shutdown.append(_close_sockets)
    app.on_cleanup.append(_shutdown_streams)

    # Routes
    app.router.add_get("/", health)
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/stats", stats)
    app.router.add_get("/ws", control_socket)
    app.router.add_get("/watch/{user_id}/{challenge_num}", watch)
    app.router.add_get("/timelapse/{user_id}/{challenge_num}", timelapse)
    app.router.add_static(f"/{static_prefix}/", str(controller.recordings_root), show_index=False)

    return app


async def serve(app: web.Application, host: str, port: int, *, access_log: bool = False) -> None:
    """Run ``app`` until its shutdown event is set."""
    log = logging.getLogger("web_streamer")
    runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access") if access_log else None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("web_streamer started on %s:%s", host, port)
    log.info("Recordings directory: %s", app[CONTROLLER_KEY].recordings_root)
    try:
        await app[SHUTDOWN_EVENT_KEY].wait()
    finally:
        log.info("Stopping web_streamer ...")
        await runner.cleanup()
        log.info("web_streamer stopped")


def cli_main() -> int:
    parser = argparse.ArgumentParser(description="Live capture ingest and HLS streaming server.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", help="Python logging level (defaults to config, INFO).")
    args = parser.parse_args()

    cfg = get_cfg()
    server_cfg = config_module.section(cfg, "server")
    log_level = (args.log_level or config_module.section(cfg, "logging")["level"]).upper()

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _quiet_noisy_dependencies()
    log = logging.getLogger("web_streamer")

    active = config_module.active_config_path()
    log.info("Using config %s", active if active is not None else "<defaults>")

    bind_host = args.host if args.host else server_cfg["host"]
    bind_port = args.port if args.port else int(server_cfg["port"])
    access_log = bool(args.access_log or server_cfg.get("access_log"))

    async def _main() -> None:
        app = build_app(cfg)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, app[SHUTDOWN_EVENT_KEY].set)
        await serve(app, bind_host, bind_port, access_log=access_log)

    try:
        asyncio.run(_main())
    except OSError as exc:
        log.error("Unable to start web_streamer: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
