"""HTTP front end for Network Doctor.

POST /query  {"prompt": str, "projectId"?: str, "sessionId"?: str}
          -> {"response", "evidenceTrail", "sessionId", "state"}
GET  /healthz
"""

import logging
import sys
import threading
from typing import Any, Callable, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from network_agent import (
    ABORTED,
    DONE,
    OracleError,
    TroubleshootingWorkflow,
    WorkflowError,
    build_workflow,
    load_settings,
)

SERVICE_NAME = "network-doctor"

logger = logging.getLogger("network_doctor.http")


def setup_logging():
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    ))
    root.addHandler(handler)


class QueryRequest(BaseModel):
    prompt: Any = None
    projectId: Optional[str] = None
    sessionId: Optional[str] = None


class SessionStore:
    """In-memory workflows keyed by session id."""

    def __init__(self):
        self._workflows: dict[str, TroubleshootingWorkflow] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[TroubleshootingWorkflow]:
        with self._lock:
            return self._workflows.get(session_id)

    def put(self, workflow: TroubleshootingWorkflow):
        with self._lock:
            self._workflows[workflow.session.session_id] = workflow

    def discard(self, session_id: str):
        with self._lock:
            self._workflows.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._workflows)


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def create_app(
    workflow_factory: Optional[Callable[[str], TroubleshootingWorkflow]] = None,
    default_project: Optional[str] = None,
) -> FastAPI:
    """Build the app. workflow_factory(project) returns a fresh workflow for a new session."""
    settings = load_settings()
    if workflow_factory is None:
        def workflow_factory(project: str) -> TroubleshootingWorkflow:
            return build_workflow(project, settings=settings)
    if default_project is None:
        default_project = settings.default_project

    app = FastAPI(title=SERVICE_NAME, version="0.1.0")
    store = SessionStore()
    app.state.sessions = store

    @app.get("/healthz")
    def health():
        return {"status": "ok", "service": SERVICE_NAME, "sessions": len(store)}

    @app.post("/query")
    def query(req: QueryRequest):
        if not isinstance(req.prompt, str) or not req.prompt.strip():
            return _error(400, "Prompt is required")

        try:
            if req.sessionId:
                workflow = store.get(req.sessionId)
                if workflow is None:
                    return _error(404, f"Unknown session: {req.sessionId}")
            else:
                project = req.projectId or default_project
                if not project:
                    return _error(400, "ProjectId is required in body or "
                                       "GOOGLE_CLOUD_PROJECT env var")
                workflow = workflow_factory(project)
                store.put(workflow)

            logger.info("query session=%s state=%s", workflow.session.session_id,
                        workflow.session.state)
            reply = workflow.handle_message(req.prompt)
            logger.info("reply session=%s state=%s", reply["sessionId"], reply["state"])
            if reply["state"] in (DONE, ABORTED):
                store.discard(reply["sessionId"])
            return reply
        except (OracleError, WorkflowError) as e:
            logger.error("Error processing query: %s", e)
            return _error(500, str(e))
        except Exception as e:
            logger.exception("Unexpected error processing query")
            return _error(500, str(e))

    return app


def main():
    load_dotenv()
    setup_logging()
    port = load_settings().port
    logger.info("%s listening on port %d", SERVICE_NAME, port)
    uvicorn.run(create_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
