"""
MedChronos AI Service - FastAPI Backend

Thin HTTP shell over the caption pipeline, report synthesis and streaming
chat. Providers and stores are constructed once per app and passed into the
components that use them.
"""
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .caption_pipeline import CaptionPipeline
from .citations import render_citations, resolve_citations
from .config import Settings
from .conversation import ConversationOrchestrator
from .errors import (
    InvalidInputError,
    MedChronosError,
    NotFoundError,
    ProviderError,
    SafetyBlockedError,
    UnparseableReportError,
)
from .fallback import FallbackChain
from .gemini_client import GeminiClient
from .input_sanitization import sanitize_chat_message, sanitize_free_text, sanitize_title
from .medgemma_client import MedGemmaClient
from .models import (
    Chat,
    ChatMessage,
    ChatRequest,
    CreatePatientRequest,
    GenerateReportRequest,
    Patient,
    RenderedCitation,
    RenderedReportResponse,
    Report,
    StudyProcessingResponse,
)
from .rate_limiter import RateLimitManager, client_ip, limits_from_settings
from .report_synthesizer import ReportSynthesizer
from .retry import RetryPolicy
from .stores import EntityStore, InMemoryEntityStore, LocalObjectStore, ObjectStore
from .structured_logging import StructuredLogger, log_request, set_request_id, setup_logging
from .study_service import ImageUpload, StudyService, parse_imaging_datetime, study_prefix

logger = StructuredLogger("api")

STUDY_LINK_TEMPLATE = "#study-{study_id}"
CHAT_TITLE_MESSAGE_LIMIT = 10
STREAM_ERROR_NOTICE = "\n\n[The response was interrupted. Please try again.]"


@dataclass
class Services:
    settings: Settings
    entities: EntityStore
    objects: ObjectStore
    specialized: Optional[MedGemmaClient]
    general: Optional[GeminiClient]
    studies: Optional[StudyService]
    reports: Optional[ReportSynthesizer]
    conversation: Optional[ConversationOrchestrator]
    rate_limits: RateLimitManager


def build_providers(settings: Settings) -> tuple[Optional[MedGemmaClient], Optional[GeminiClient]]:
    """Construct whichever providers the settings configure."""
    specialized = None
    if settings.medgemma_base_url:
        specialized = MedGemmaClient(
            base_url=settings.medgemma_base_url,
            model_id=settings.medgemma_model_id,
            request_format=settings.medgemma_request_format,
            access_token=settings.medgemma_access_token,
            timeout=settings.processing_timeout_seconds,
        )
    else:
        logger.warning("MEDGEMMA_BASE_URL not set; captioning runs on the general model only")

    general = None
    if settings.gemini_api_key:
        general = GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            flash_model=settings.gemini_flash_model,
            timeout=settings.processing_timeout_seconds,
        )
    else:
        logger.warning("GEMINI_API_KEY not set; reports, chat and fallback captioning are disabled")
    return specialized, general


def build_services(
    settings: Settings,
    specialized: Optional[MedGemmaClient],
    general: Optional[GeminiClient],
    entities: EntityStore,
    objects: ObjectStore,
) -> Services:
    retry_policy = RetryPolicy(settings.retry_max_attempts, settings.retry_backoff_seconds)

    studies = None
    if specialized is not None or general is not None:
        pipeline = CaptionPipeline(
            FallbackChain(specialized, general, retry_policy),
            general=general,
            retry_policy=retry_policy,
            enhance_captions=settings.enhance_captions,
            max_concurrency=settings.caption_max_concurrency,
            image_timeout=settings.processing_timeout_seconds,
        )
        studies = StudyService(
            entities,
            objects,
            pipeline,
            general=general,
            retry_policy=retry_policy,
            image_size=settings.image_target_size,
            jpeg_quality=settings.image_jpeg_quality,
        )

    reports = conversation = None
    if general is not None:
        reports = ReportSynthesizer(general, retry_policy, timeout=settings.report_timeout_seconds)
        conversation = ConversationOrchestrator(
            general,
            chunk_timeout=settings.chat_chunk_timeout_seconds,
            total_timeout=settings.chat_total_timeout_seconds,
        )

    return Services(
        settings=settings,
        entities=entities,
        objects=objects,
        specialized=specialized,
        general=general,
        studies=studies,
        reports=reports,
        conversation=conversation,
        rate_limits=RateLimitManager(limits_from_settings(settings)),
    )


def _require(component, what: str):
    if component is None:
        raise HTTPException(status_code=503, detail=f"{what} is not available: no model provider configured")
    return component


def create_app(
    settings: Optional[Settings] = None,
    specialized: Optional[MedGemmaClient] = None,
    general: Optional[GeminiClient] = None,
    entity_store: Optional[EntityStore] = None,
    object_store: Optional[ObjectStore] = None,
) -> FastAPI:
    """Build the FastAPI app.

    Providers default to those configured by the settings; pass them in to
    substitute fakes.
    """
    settings = settings or Settings.from_env()
    if specialized is None and general is None:
        specialized, general = build_providers(settings)
    services = build_services(
        settings,
        specialized,
        general,
        entity_store or InMemoryEntityStore(),
        object_store or LocalObjectStore(settings.object_store_dir),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting MedChronos AI Service",
            specialized=services.specialized is not None,
            general=services.general is not None,
        )
        yield
        logger.info("Shutting down...")
        for provider in (services.specialized, services.general):
            if provider is not None:
                await provider.aclose()

    app = FastAPI(
        title="MedChronos AI Service",
        description="Longitudinal imaging captioning, report synthesis and follow-up chat",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Chat-Id"],
    )

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """Middleware for request ID tracking and logging."""
        start_time = time.time()
        request_id = set_request_id(request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8])

        response = await call_next(request)

        if request.url.path not in ["/health", "/docs", "/openapi.json"]:
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=(time.time() - start_time) * 1000,
                client_ip=client_ip(request),
            )

        response.headers.update(getattr(request.state, "rate_limit_headers", {}))
        response.headers["X-Request-ID"] = request_id
        return response

    # --- Error mapping ---

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.exception_handler(InvalidInputError)
    async def invalid_input_handler(request: Request, exc: InvalidInputError):
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(SafetyBlockedError)
    async def safety_handler(request: Request, exc: SafetyBlockedError):
        logger.warning("Request blocked by provider safety filters", provider=exc.provider, error=exc.message)
        return JSONResponse({"error": exc.user_message, "safety_blocked": True}, status_code=400)

    @app.exception_handler(UnparseableReportError)
    async def unparseable_report_handler(request: Request, exc: UnparseableReportError):
        logger.error("Report response could not be parsed", error=str(exc), raw_preview=exc.raw_text[:500])
        return JSONResponse({"error": "Failed to parse report data"}, status_code=502)

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError):
        logger.error("Model provider failed", provider=exc.provider, status_code=exc.status_code, error=exc.message)
        return JSONResponse({"error": f"Model provider error: {exc.message}"}, status_code=502)

    # --- Endpoints ---

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "specialized_model": services.specialized is not None,
            "general_model": services.general is not None,
            "mode": (
                "two-tier" if services.specialized and services.general
                else "degraded" if services.specialized or services.general
                else "unavailable"
            ),
        }

    @app.post("/patients", response_model=Patient, status_code=201)
    async def create_patient(body: CreatePatientRequest):
        patient = Patient(
            name=sanitize_title(body.name),
            age=body.age,
            sex=sanitize_title(body.sex),
            mrn=sanitize_free_text(body.mrn),
            reason_for_imaging=sanitize_free_text(body.reason_for_imaging),
        )
        return await services.entities.create_patient(patient)

    @app.delete("/patients/{patient_id}")
    async def delete_patient(patient_id: str):
        if services.studies is not None:
            deleted = await services.studies.delete_patient(patient_id)
        else:
            await services.entities.delete_patient(patient_id)
            deleted = await services.objects.delete_all(study_prefix(patient_id))
        return {"deleted": True, "objects_deleted": deleted}

    @app.post("/studies", response_model=StudyProcessingResponse, status_code=201)
    async def create_study(
        request: Request,
        patient_id: str = Form(...),
        files: list[UploadFile] = File(...),
        title: Optional[str] = Form(None),
        modality: Optional[str] = Form(None),
        imaging_datetime: Optional[str] = Form(None),
        include_codes: bool = Form(False),
        auto_title: bool = Form(False),
        auto_date: bool = Form(False),
        auto_modality: bool = Form(False),
    ):
        services.rate_limits.check("studies", request, units=len(files))
        study_service = _require(services.studies, "Study processing")
        uploads = [
            ImageUpload(
                filename=upload.filename or "image",
                content_type=upload.content_type or "",
                data=await upload.read(),
            )
            for upload in files
        ]
        return await study_service.ingest(
            patient_id,
            uploads,
            title=title,
            modality=modality or None,
            imaging_datetime=parse_imaging_datetime(imaging_datetime) if imaging_datetime else None,
            include_codes=include_codes,
            auto_title=auto_title,
            auto_date=auto_date,
            auto_modality=auto_modality,
        )

    @app.post("/studies/{study_id}/refresh", response_model=StudyProcessingResponse)
    async def refresh_study(study_id: str, request: Request):
        services.rate_limits.check("studies-refresh", request)
        return await _require(services.studies, "Study processing").refresh(study_id)

    @app.post("/reports/generate", response_model=Report, status_code=201)
    async def generate_report(body: GenerateReportRequest, request: Request):
        services.rate_limits.check("reports-generate", request)
        synthesizer = _require(services.reports, "Report generation")
        patient = await services.entities.get_patient(body.patient_id)
        studies = await services.entities.list_studies(patient.id)
        include_codes = body.include_codes or any(s.include_codes for s in studies)
        output = await synthesizer.synthesize(patient, studies, include_codes)
        return await services.entities.add_report(Report(patient_id=patient.id, output=output))

    @app.get("/reports/{report_id}/rendered", response_model=RenderedReportResponse)
    async def rendered_report(report_id: str):
        report = await services.entities.get_report(report_id)
        studies = await services.entities.list_studies(report.patient_id)

        numbers: dict[str, int] = {}
        findings, numbers = render_citations(report.output.findings, studies, STUDY_LINK_TEMPLATE, numbers)
        impression, numbers = render_citations(report.output.impression, studies, STUDY_LINK_TEMPLATE, numbers)
        next_steps, numbers = render_citations(report.output.next_steps, studies, STUDY_LINK_TEMPLATE, numbers)

        resolved = resolve_citations(sorted(numbers, key=numbers.get), studies, numbers)
        missing = [c.study_id for c in resolved if not c.found]
        if missing:
            logger.warning("Report cites studies that no longer exist", report_id=report_id, study_ids=missing)

        return RenderedReportResponse(
            report_id=report.id,
            findings=findings,
            impression=impression,
            next_steps=next_steps,
            citations=[
                RenderedCitation(number=c.number, study_id=c.study_id, label=c.label, found=c.found)
                for c in resolved
            ],
        )

    @app.post("/chat")
    async def chat(body: ChatRequest, request: Request):
        services.rate_limits.check("chat", request)
        orchestrator = _require(services.conversation, "Chat")
        entities = services.entities

        patient = await entities.get_patient(body.patient_id)
        studies = await entities.list_studies(patient.id)
        latest = await entities.latest_report(patient.id)

        chat_record = None
        if body.chat_id:
            chat_record = await entities.get_chat(body.chat_id)
            if chat_record.patient_id != patient.id:
                raise NotFoundError("chat", body.chat_id)

        question = sanitize_chat_message(body.messages[-1].text)
        if not question:
            raise InvalidInputError("Message cannot be empty")
        history = body.messages[:-1]

        stream = orchestrator.stream_reply(
            patient, studies, latest.output if latest else None, history, question
        )
        # Pull the first chunk before responding so prompt-level safety
        # blocks and provider failures surface as proper status codes
        try:
            first_chunk = await stream.__anext__()
        except StopAsyncIteration:
            first_chunk = ""

        if chat_record is None:
            chat_record = await entities.create_chat(Chat(patient_id=patient.id))
        await entities.add_message(ChatMessage(chat_id=chat_record.id, role="user", content=question))

        async def relay():
            parts = [first_chunk] if first_chunk else []
            try:
                if first_chunk:
                    yield first_chunk
                async for chunk in stream:
                    parts.append(chunk)
                    yield chunk
            except SafetyBlockedError as e:
                logger.warning("Chat reply blocked mid-stream", chat_id=chat_record.id, error=e.message)
                yield f"\n\n{e.user_message}"
                return
            except MedChronosError as e:
                logger.error("Chat stream failed", chat_id=chat_record.id, error=str(e))
                yield STREAM_ERROR_NOTICE
                return
            finally:
                await stream.aclose()

            reply = "".join(parts)
            await entities.add_message(ChatMessage(chat_id=chat_record.id, role="assistant", content=reply))
            messages = await entities.list_messages(chat_record.id)
            title = await orchestrator.generate_title(messages[:CHAT_TITLE_MESSAGE_LIMIT])
            await entities.update_chat(chat_record.model_copy(update={"title": title}))
            logger.info("Chat turn persisted", chat_id=chat_record.id, reply_chars=len(reply), title=title)

        return StreamingResponse(
            relay(),
            media_type="text/plain; charset=utf-8",
            headers={"X-Chat-Id": chat_record.id},
        )

    return app


def main():
    import uvicorn

    settings = Settings.from_env()
    setup_logging(settings.log_level, use_json=settings.log_json)
    uvicorn.run("medchronos.main:create_app", factory=True, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
