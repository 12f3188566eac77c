from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse


def _json_object(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload.")
    return payload


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload.") from exc
    return _json_object(payload)


def register_companion_routes(app: FastAPI, *, state: Any, logger: logging.Logger) -> None:
    @app.get("/api/server")
    def api_server_status() -> dict[str, Any]:
        return state.status_payload()

    @app.post("/api/server/start")
    async def api_server_start() -> dict[str, Any]:
        started = await state.start_server()
        return {"started": bool(started), **state.status_payload()}

    @app.post("/api/server/stop")
    async def api_server_stop() -> dict[str, Any]:
        await state.stop_server()
        return state.status_payload()

    @app.put("/api/project-directory")
    async def api_project_directory(request: Request) -> dict[str, Any]:
        payload = await _read_json_object(request)
        directory = str(payload.get("directory") or "").strip()
        if not directory:
            raise HTTPException(status_code=400, detail="directory is required.")
        await state.update_project_directory(directory)
        return state.status_payload()

    @app.post("/api/sessions")
    async def api_create_session() -> dict[str, Any]:
        if not state.is_running():
            raise HTTPException(status_code=409, detail="Server is not running.")
        result = await state.create_session()
        if not result.ok:
            raise result.error
        session_id = str(result.payload)
        logger.info(
            "Created session %s",
            session_id,
            extra={"component": "api", "operation": "create_session", "result": "ok", "session_id": session_id},
        )
        return {"id": session_id, "url": state.synchronizer.get_session_url(session_id)}

    @app.post("/api/context", status_code=202)
    async def api_push_context(request: Request) -> JSONResponse:
        payload = await _read_json_object(request)
        session_ref = str(payload.get("session_id") or payload.get("session_url") or "").strip()
        context_text = payload.get("context_text")
        if context_text is not None and not isinstance(context_text, str):
            raise HTTPException(status_code=400, detail="context_text must be a string or null.")
        if not state.is_running():
            raise HTTPException(status_code=409, detail="Server is not running.")
        session_id = state.push_context(session_ref, context_text)
        if session_id is None:
            raise HTTPException(status_code=400, detail="session_id or a session_url is required.")
        return JSONResponse(status_code=202, content={"scheduled": True, "session_id": session_id})
