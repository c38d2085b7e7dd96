"""Engine HTTP surface.

Routes:
- GET  /api/health                               → liveness + store ping
- POST /api/cron/sweep?rule=                     → scheduled sweep (shared secret)
- POST /api/pipelines/{pipeline_id}/on-access    → board-open trigger check
- GET  /api/pipelines/{pipeline_id}/board        → cached board rows
- POST /api/items/move                           → manual stage change
- POST /api/invoicing/invoice                    → issue invoice
- POST /api/invoicing/cancel                     → cancel invoice
- POST /api/invoicing/archive                    → archive and release
- POST /api/service-files/package-arrived        → mark courier packages arrived

Usage:
    ```python
    api = EngineWebAPI(engine, port=8080)
    await api.startup()
    ...
    await api.shutdown()
    ```
"""
import asyncio
import hmac
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from config.settings import Settings, settings as default_settings
from engine.core import PipelineEngine
from engine.items import ItemRef
from engine.results import EngineError, ErrorCode

HTTP_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INACTIVE: 409,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.CONFIGURATION_MISSING: 422,
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.UNAUTHORIZED: 403,
}


class SessionAuthenticator(ABC):
    """Resolves a bearer token to an actor id. User management lives elsewhere."""

    @abstractmethod
    def authenticate(self, token: str) -> Optional[str]:
        pass


class TokenAuthenticator(SessionAuthenticator):
    """Fixed token → actor mapping (``settings.session_tokens``)."""

    def __init__(self, tokens: Optional[Dict[str, str]] = None) -> None:
        self.tokens = dict(tokens or {})

    def authenticate(self, token: str) -> Optional[str]:
        for known, actor_id in self.tokens.items():
            if hmac.compare_digest(known, token):
                return actor_id
        return None


def error_body(error: EngineError) -> Dict[str, Any]:
    body = error.to_dict()
    body["ok"] = False
    body["error"] = error.message
    return body


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 → naive UTC; None and "" pass through as None.

    Raises:
        ValueError: unparseable value, or not a string.
    """
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be an ISO-8601 string, got {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_id(value: Any, field: str) -> int:
    """Integer id from a JSON body value; numeric strings are accepted.

    Raises:
        ValueError: missing, boolean or non-integer value.
    """
    if value is None:
        raise ValueError(f"{field} is required")
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValueError(f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be an integer") from None


class EngineWebAPI:
    """FastAPI application over a PipelineEngine.

    Args:
        engine: wired engine services.
        config: settings (cron secret, session tokens).
        authenticator: session token resolver; TokenAuthenticator over
            ``config.session_tokens`` when None.
        host: listen address.
        port: listen port.
    """

    def __init__(
        self,
        engine: PipelineEngine,
        config: Optional[Settings] = None,
        authenticator: Optional[SessionAuthenticator] = None,
        host: str = "0.0.0.0",
        port: int = 8080,
    ):
        self.engine = engine
        self.config = config or default_settings
        self.authenticator = authenticator or TokenAuthenticator(self.config.session_tokens)
        self.host = host
        self.port = port
        self.running = False
        self.app = self._create_app()
        self._server_thread: Optional[threading.Thread] = None
        self._server = None
        self._server_loop = None

    def _create_app(self):
        """Build the FastAPI application."""
        from fastapi import Body, FastAPI, Request, Depends, HTTPException
        from fastapi.responses import JSONResponse

        app = FastAPI(
            title="Kanban stage engine",
            description="Pipeline stage transitions, trigger sweeps and invoicing",
            version="0.1.0",
        )
        engine = self.engine

        def bearer_token(request: Request) -> str:
            auth = request.headers.get("Authorization", "")
            if auth.startswith("Bearer "):
                return auth[7:].strip()
            return ""

        def get_current_actor(request: Request) -> str:
            """Actor id behind the session token."""
            token = bearer_token(request)
            actor_id = self.authenticator.authenticate(token) if token else None
            if actor_id is None:
                raise HTTPException(status_code=401, detail="Unauthorized")
            return actor_id

        def require_cron_secret(request: Request) -> None:
            secret = self.config.cron_secret
            if not secret:
                raise HTTPException(status_code=401, detail="Cron secret not configured")
            given = bearer_token(request) or request.query_params.get("secret", "")
            if not hmac.compare_digest(given, secret):
                raise HTTPException(status_code=401, detail="Unauthorized")

        def failure(error: EngineError) -> JSONResponse:
            return JSONResponse(status_code=HTTP_STATUS[error.code], content=error_body(error))

        @app.exception_handler(SQLAlchemyError)
        async def storage_error(request: Request, exc: SQLAlchemyError):
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
            return JSONResponse(status_code=500,
                                content={"ok": False, "error": "Storage error"})

        # ==================== Health ====================

        @app.get("/api/health")
        def health_check():
            try:
                engine.db.ping()
                store = "ok"
            except SQLAlchemyError as e:
                logger.warning(f"Health check: store unavailable: {e}")
                store = "unavailable"
            return {"status": "ok", "store": store, "running": self.running}

        # ==================== Trigger sweeps ====================

        @app.post("/api/cron/sweep")
        def cron_sweep(rule: Optional[str] = None, nightly: bool = False,
                       _=Depends(require_cron_secret)):
            names = [n.strip() for n in rule.split(",") if n.strip()] if rule else None
            known = set(engine.scanner.rule_names())
            summary = engine.scanner.run_cron(rule_names=names, include_nightly=nightly)
            if summary.ok:
                status = 200
            elif names and not known.issuperset(names):
                status = 400
            else:
                status = 503
            return JSONResponse(status_code=status, content=summary.to_response())

        @app.post("/api/pipelines/{pipeline_id}/on-access")
        def on_access(pipeline_id: int, _=Depends(get_current_actor)):
            if engine.directory.get_pipeline(pipeline_id) is None:
                return failure(EngineError(ErrorCode.NOT_FOUND, f"Pipeline {pipeline_id} not found"))
            summary = engine.scanner.run_on_access(pipeline_id)
            return JSONResponse(status_code=200 if summary.ok else 503,
                                content=summary.to_response())

        # ==================== Boards ====================

        @app.get("/api/pipelines/{pipeline_id}/board")
        def board(pipeline_id: int, filter: Optional[str] = None,
                  variant: str = "default", _=Depends(get_current_actor)):
            if engine.directory.get_pipeline(pipeline_id) is None:
                return failure(EngineError(ErrorCode.NOT_FOUND, f"Pipeline {pipeline_id} not found"))
            return engine.board.get_board(pipeline_id, filter or None, variant).to_dict()

        # ==================== Moves ====================

        @app.post("/api/items/move")
        def move_item(data: Dict[str, Any] = Body(...),
                      actor_id: str = Depends(get_current_actor)):
            try:
                item = ItemRef.of(data["itemType"], data["itemId"])
                pipeline_id = int(data["pipelineId"])
                stage_id = int(data["targetStageId"])
                timestamp = parse_timestamp(data.get("timestamp"))
            except (KeyError, TypeError, ValueError) as e:
                return failure(EngineError(ErrorCode.VALIDATION_FAILED,
                                           f"Invalid move request: {e}"))
            result = engine.executor.move(item, pipeline_id, stage_id, actor_id, timestamp)
            if not result.ok:
                return failure(result.error)
            return {"ok": True, "placement": result.value.to_dict()}

        # ==================== Invoicing ====================

        @app.post("/api/invoicing/invoice")
        def issue_invoice(data: Dict[str, Any] = Body(...),
                          actor_id: str = Depends(get_current_actor)):
            try:
                service_file_id = parse_id(data.get("serviceFileId"), "serviceFileId")
            except ValueError as e:
                return failure(EngineError(ErrorCode.VALIDATION_FAILED, str(e)))
            billing_data = data.get("billingData") or {}
            if not isinstance(billing_data, dict):
                return failure(EngineError(ErrorCode.VALIDATION_FAILED,
                                           "billingData must be an object"))
            result = engine.invoicing.invoice(service_file_id, billing_data, actor_id)
            if not result.ok:
                return failure(result.error)
            return dict(result.value.to_dict(), ok=True)

        @app.post("/api/invoicing/cancel")
        def cancel_invoice(data: Dict[str, Any] = Body(...),
                           actor_id: str = Depends(get_current_actor)):
            try:
                service_file_id = parse_id(data.get("serviceFileId"), "serviceFileId")
            except ValueError as e:
                return failure(EngineError(ErrorCode.VALIDATION_FAILED, str(e)))
            result = engine.invoicing.cancel_invoice(service_file_id,
                                                     data.get("reason"), actor_id)
            if not result.ok:
                return failure(result.error)
            return dict(result.value, ok=True)

        @app.post("/api/invoicing/archive")
        def archive_service_file(data: Dict[str, Any] = Body(...),
                                 actor_id: str = Depends(get_current_actor)):
            try:
                service_file_id = parse_id(data.get("serviceFileId"), "serviceFileId")
            except ValueError as e:
                return failure(EngineError(ErrorCode.VALIDATION_FAILED, str(e)))
            result = engine.invoicing.archive_and_release(service_file_id, actor_id)
            if not result.ok:
                return failure(result.error)
            return dict(result.value.to_dict(), ok=True)

        # ==================== Packages ====================

        @app.post("/api/service-files/package-arrived")
        def package_arrived(data: Dict[str, Any] = Body(...),
                            actor_id: str = Depends(get_current_actor)):
            raw_ids = data.get("serviceFileIds")
            try:
                if not isinstance(raw_ids, list) or not raw_ids:
                    raise ValueError("serviceFileIds must be a non-empty list")
                service_file_ids = [parse_id(v, "serviceFileIds[]") for v in raw_ids]
            except ValueError as e:
                return failure(EngineError(ErrorCode.VALIDATION_FAILED, str(e)))
            result = engine.mark_package_arrived(service_file_ids, actor_id)
            if not result.ok:
                return failure(result.error)
            return {"ok": True, "markedIds": result.value}

        return app

    async def startup(self):
        """Serve the app with uvicorn on a background thread."""
        import uvicorn

        self.running = True

        def run_server():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            self._server_loop = loop

            config = uvicorn.Config(
                self.app,
                host=self.host,
                port=self.port,
                log_level="warning",
                loop="asyncio",
            )
            self._server = uvicorn.Server(config)
            # signals are handled by app.py
            self._server.install_signal_handlers = lambda: None

            try:
                loop.run_until_complete(self._server.serve())
            except Exception as e:
                logger.error(f"Web server stopped with an error: {e}")
            finally:
                pending = asyncio.all_tasks(loop)
                for task in pending:
                    task.cancel()
                if pending:
                    loop.run_until_complete(
                        asyncio.gather(*pending, return_exceptions=True)
                    )
                loop.run_until_complete(loop.shutdown_asyncgens())
                loop.close()

        self._server_thread = threading.Thread(target=run_server, daemon=True)
        self._server_thread.start()

        max_wait = 5
        waited = 0
        while self._server is None and waited < max_wait:
            await asyncio.sleep(0.1)
            waited += 0.1

        logger.info(f"Engine API listening on http://{self.host}:{self.port}")

    async def shutdown(self):
        """Stop the server thread, forcing it after 3 seconds."""
        self.running = False

        if self._server is not None:
            try:
                logger.info("Stopping web server...")
                self._server.should_exit = True

                if self._server_thread and self._server_thread.is_alive():
                    self._server_thread.join(timeout=3.0)

                if self._server_thread and self._server_thread.is_alive():
                    logger.warning("Web server did not stop within 3s, forcing exit")
                    self._server.force_exit = True
                    if self._server_loop and self._server_loop.is_running():
                        self._server_loop.call_soon_threadsafe(self._server_loop.stop)
                    self._server_thread.join(timeout=2.0)
            finally:
                self._server = None
                self._server_loop = None
                self._server_thread = None

        logger.info("Engine API stopped")
