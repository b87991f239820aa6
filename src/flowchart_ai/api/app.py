"""FastAPI application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status

from flowchart_ai.api.admin import router as admin_router
from flowchart_ai.api.models import (
    AnalysisBatchCreate,
    AnalysisCreate,
    BatchDiagramPayload,
    BatchRenderPayload,
    DiagramPayload,
    OptimizePayload,
    RenderPayload,
    RepairPayload,
)
from flowchart_ai.app_logging import configure_logging, level_for_environment
from flowchart_ai.containers import AppContainer
from flowchart_ai.domain.errors import RequestValidationError, SessionCapacityError
from flowchart_ai.domain.sessions import AnalysisRequest, Session


def create_app(container: AppContainer) -> FastAPI:  # noqa: PLR0915
    """Create a FastAPI app configured with dependencies."""
    configure_logging(level_for_environment(container.settings.environment))
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.container.session_sweeper.start()
        yield
        await app.state.container.session_sweeper.stop()
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.post("/api/v1/analysis")
    async def create_analysis(
        payload: AnalysisCreate, request: Request
    ) -> dict[str, object]:
        """Start an analysis session and schedule its pipeline."""
        state_container: AppContainer = request.app.state.container
        return _submit(state_container, _to_request(payload, "api"))

    @app.post("/api/v1/analysis/upload")
    async def create_analysis_from_upload(
        request: Request,
        file: UploadFile = File(...),
        product_type: str = Form("web"),
        implement_type: str = Form("standard"),
    ) -> dict[str, object]:
        """Start an analysis session from an uploaded text document."""
        state_container: AppContainer = request.app.state.container
        content = await file.read()
        try:
            requirement = state_container.document_parser.parse(
                file.filename or "", content
            )
        except RequestValidationError as exc:
            raise _bad_request(exc) from exc
        logger.info("Parsed upload %s (%s chars)", file.filename, len(requirement))
        analysis_request = AnalysisRequest(
            requirement=requirement,
            product_type=product_type,
            implement_type=implement_type,
            source="upload",
        )
        return _submit(state_container, analysis_request)

    @app.post("/api/v1/analysis/batch")
    async def create_analysis_batch(
        payload: AnalysisBatchCreate, request: Request
    ) -> dict[str, object]:
        """Start one session per request, reporting rejections per item."""
        state_container: AppContainer = request.app.state.container
        try:
            return state_container.analysis_service.submit_batch(
                [_to_request(item, "batch_api") for item in payload.requests]
            )
        except RequestValidationError as exc:
            raise _bad_request(exc) from exc

    @app.get("/api/v1/analysis")
    async def list_analyses(request: Request) -> dict[str, object]:
        """Return in-flight sessions and store statistics."""
        state_container: AppContainer = request.app.state.container
        store = state_container.session_store
        return {"active_sessions": store.active_sessions(), "stats": store.stats()}

    @app.get("/api/v1/analysis/{session_id}")
    async def get_analysis(
        session_id: str, request: Request, include_performance: bool = False
    ) -> dict[str, object]:
        """Poll the status, progress and outcome of a session."""
        state_container: AppContainer = request.app.state.container
        store = state_container.session_store
        session = store.get_session(session_id)
        if session is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Session not found or expired",
            )
        body: dict[str, object] = {
            "session_id": session.id,
            "status": session.status.value,
            "progress": _progress(session),
            "created_at": session.metadata.created_at.isoformat(),
            "processing_time_ms": store.processing_time_ms(session),
            "retry_count": session.metadata.retry_count,
        }
        if session.result is not None:
            body["result"] = session.result
        if session.error is not None:
            body["error"] = session.error
        if include_performance:
            body["performance"] = dict(session.performance)
        return body

    @app.delete("/api/v1/analysis/{session_id}")
    async def cancel_analysis(session_id: str, request: Request) -> dict[str, object]:
        """Cancel a pending or processing session."""
        state_container: AppContainer = request.app.state.container
        store = state_container.session_store
        session = store.get_session(session_id)
        if session is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Session not found or expired",
            )
        if not store.cancel_session(session_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Session in status {session.status.value} cannot be cancelled",
            )
        return {"session_id": session_id, "status": session.status.value}

    @app.post("/api/v1/flowchart/validate")
    async def validate_flowchart(
        payload: DiagramPayload, request: Request
    ) -> dict[str, object]:
        """Validate diagram source and return structured issues."""
        state_container: AppContainer = request.app.state.container
        result = state_container.diagram_processor.validate(
            payload.code,
            payload.expected_type,
            tolerate_type_mismatch=payload.tolerate_type_mismatch,
        )
        return result.as_dict()

    @app.post("/api/v1/flowchart/validate/batch")
    async def validate_flowcharts(
        payload: BatchDiagramPayload, request: Request
    ) -> dict[str, object]:
        """Validate several diagrams with per-item results."""
        state_container: AppContainer = request.app.state.container
        try:
            batch = state_container.diagram_processor.validate_batch(
                payload.items,
                payload.expected_type,
                tolerate_type_mismatch=payload.tolerate_type_mismatch,
            )
        except RequestValidationError as exc:
            raise _bad_request(exc) from exc
        return batch.as_dict()

    @app.post("/api/v1/flowchart/repair")
    async def repair_flowchart(
        payload: RepairPayload, request: Request
    ) -> dict[str, object]:
        """Rewrite a diagram the renderer rejected."""
        state_container: AppContainer = request.app.state.container
        if not payload.code.strip():
            raise _bad_request(RequestValidationError("code", "code is required"))
        result = state_container.diagram_processor.repair(
            payload.code, payload.error_message, payload.requirement
        )
        return result.as_dict()

    @app.post("/api/v1/flowchart/optimize")
    async def optimize_flowchart(
        payload: OptimizePayload, request: Request
    ) -> dict[str, object]:
        """Reformat diagram source without changing its structure."""
        state_container: AppContainer = request.app.state.container
        processor = state_container.diagram_processor
        optimized = processor.optimize(
            payload.code,
            remove_comments=payload.remove_comments,
            format_indentation=payload.format_indentation,
            fix_special_chars=payload.fix_special_chars,
        )
        return {"code": optimized, "stats": processor.stats(optimized).as_dict()}

    @app.post("/api/v1/flowchart/render")
    async def render_flowchart(
        payload: RenderPayload, request: Request
    ) -> dict[str, object]:
        """Render one diagram, serving repeats from the cache."""
        state_container: AppContainer = request.app.state.container
        result = await state_container.render_service.render_one(
            payload.code, payload.options.to_options()
        )
        return result.as_dict()

    @app.post("/api/v1/flowchart/render/batch")
    async def render_flowcharts(
        payload: BatchRenderPayload, request: Request
    ) -> dict[str, object]:
        """Render several diagrams concurrently with per-item results."""
        state_container: AppContainer = request.app.state.container
        try:
            batch = await state_container.render_service.render_batch(
                payload.items, payload.options.to_options()
            )
        except RequestValidationError as exc:
            raise _bad_request(exc) from exc
        return batch.as_dict()

    return app


def _submit(container: AppContainer, request: AnalysisRequest) -> dict[str, object]:
    try:
        session, created = container.analysis_service.submit(request)
    except RequestValidationError as exc:
        raise _bad_request(exc) from exc
    except SessionCapacityError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    return {
        "session_id": session.id,
        "status": session.status.value,
        "progress": _progress(session),
        "duplicate": not created,
    }


def _to_request(payload: AnalysisCreate, source: str) -> AnalysisRequest:
    return AnalysisRequest(
        requirement=payload.requirement.strip(),
        product_type=payload.product_type,
        implement_type=payload.implement_type,
        source=source,
        options=payload.options,
    )


def _bad_request(exc: RequestValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"field": exc.field, "message": exc.message},
    )


def _progress(session: Session) -> dict[str, object]:
    return {
        "stage": session.progress.stage,
        "percentage": session.progress.percentage,
        "message": session.progress.message,
        "steps": list(session.progress.steps),
    }
