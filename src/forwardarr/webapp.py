import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from forwardarr.detector import TRIGGER_MANUAL
from forwardarr.service import Runtime


def create_app(runtime: Runtime) -> FastAPI:
    app = FastAPI(title="forwardarr")

    @app.get("/health", response_class=PlainTextResponse)
    def health() -> PlainTextResponse:
        if not runtime.state.running:
            return PlainTextResponse("Service not running", status_code=503)
        return PlainTextResponse("OK")

    # plain def: FastAPI runs it in the threadpool, so a slow qBittorrent
    # never blocks the event loop
    @app.get("/ready", response_class=PlainTextResponse)
    def ready() -> PlainTextResponse:
        if not runtime.client.is_reachable():
            return PlainTextResponse("qBittorrent not reachable", status_code=503)
        return PlainTextResponse("Ready")

    @app.get("/metrics")
    def metrics() -> Response:
        body, content_type = runtime.metrics.render()
        return Response(content=body, media_type=content_type)

    @app.get("/api/status")
    def status() -> JSONResponse:
        payload = runtime.state.snapshot()
        payload["port_file"] = str(runtime.settings.port_file)
        payload["qbit_addr"] = runtime.settings.qbit_addr
        payload["watching"] = runtime.detector.watching
        payload["pending_trigger"] = runtime.queue.pending
        return JSONResponse(payload)

    @app.post("/api/sync")
    def sync() -> JSONResponse:
        queued = runtime.runner.request_sync(TRIGGER_MANUAL)
        return JSONResponse({"ok": True, "queued": queued}, status_code=202)

    return app


def run_web(runtime: Runtime, host: str, port: int) -> None:
    import uvicorn

    app = create_app(runtime)
    logging.info("[web] Listening on %s:%s", host, port)
    uvicorn.run(app, host=host, port=port, log_level="warning")
