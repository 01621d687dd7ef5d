from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
import json
import time

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from app.config import get_settings
from app.errors import NotFoundError, ResearchDeskError
from app.logging_config import get_logger, setup_logging
from app.models import TargetKind, TargetRef
from app.services import Services, build_services

logger = get_logger(__name__)

ERROR_STATUS = {
    "InputError": 422,
    "ExtractionFailure": 502,
    "NotFound": 404,
    "ResolutionError": 404,
    "Busy": 409,
    "CapabilityError": 502,
    "CapabilityTimeout": 504,
    "ConfigurationError": 503,
}


# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class DocumentTextRequest(BaseModel):
    filename: str
    text: str
    batch_id: Optional[str] = None


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    filename: str
    title: Optional[str] = None
    authors: List[str] = []
    year: Optional[int] = None
    doi: Optional[str] = None
    background: Optional[str] = None
    research_question: Optional[str] = None
    major_findings: Optional[str] = None
    suggestions: Optional[str] = None
    extraction_status: str
    extraction_error: Optional[str] = None
    extracted_at: Optional[datetime] = None
    created_at: datetime


class DocumentDetailResponse(DocumentResponse):
    normalized_text: str
    markdown: str


class ExtractManyRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    document_ids: List[str]
    model_config_id: Optional[str] = None


class ExtractManyResponse(BaseModel):
    succeeded: List[str]
    failed: dict


class BatchRequest(BaseModel):
    name: str


class BatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    created_at: datetime


class PaperIn(BaseModel):
    title: str
    authors: List[str] = []
    year: Optional[int] = None
    doi: Optional[str] = None
    abstract: Optional[str] = None
    venue: Optional[str] = None
    url: Optional[str] = None


class PaperResponse(PaperIn):
    model_config = ConfigDict(from_attributes=True)

    id: str
    search_id: str


class SearchRequest(BaseModel):
    query: str
    papers: List[PaperIn] = []


class SearchResponse(BaseModel):
    id: str
    query: str
    papers: List[PaperResponse]


class ModelConfigRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    name: str
    provider: str = "ollama"
    model_name: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    context_budget: Optional[int] = Field(default=None, gt=0)
    make_default: bool = False


class ModelConfigResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str
    name: str
    provider: str
    model_name: str
    base_url: Optional[str] = None
    context_budget: Optional[int] = None
    has_api_key: bool
    is_default: bool


class ConversationRequest(BaseModel):
    target_kind: TargetKind
    target_id: Optional[str] = None
    title: Optional[str] = None


class TurnResponse(BaseModel):
    role: str
    content: str
    created_at: datetime


class ConversationDetailResponse(BaseModel):
    conversation_id: str
    target_kind: str
    target_id: Optional[str] = None
    state: str
    messages: List[TurnResponse]


class UserRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    conversation_id: str
    user_message: str
    model_config_id: Optional[str] = None


class ChatResponse(BaseModel):
    conversation_id: str
    user_message: str
    generated_response: str
    generation_time_ms: float


# ============================================================================
# APP
# ============================================================================

def get_services(request: Request) -> Services:
    return request.app.state.services


def _model_config_response(config) -> ModelConfigResponse:
    return ModelConfigResponse(
        id=config.id,
        name=config.name,
        provider=config.provider,
        model_name=config.model_name,
        base_url=config.base_url,
        context_budget=config.context_budget,
        has_api_key=bool(config.api_key),
        is_default=config.is_default,
    )


def _conversation_detail(services: Services, conversation_id: str) -> ConversationDetailResponse:
    conversation = services.conversations.get_conversation(conversation_id)
    turns = services.conversations.history(conversation_id)
    return ConversationDetailResponse(
        conversation_id=conversation.id,
        target_kind=conversation.target_kind,
        target_id=conversation.target_id,
        state=services.conversations.state(conversation.id).value,
        messages=[TurnResponse(role=t.role, content=t.content, created_at=t.created_at) for t in turns],
    )


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API. Without `services`, components are built from settings on startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            settings = get_settings()
            setup_logging(level=settings.log_level, log_file=settings.log_file)
            app.state.services = build_services(settings)
        logger.info("Starting ResearchDesk API")
        yield
        logger.info("Shutting down ResearchDesk API")

    app = FastAPI(title="ResearchDesk API", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ResearchDeskError)
    async def research_desk_error_handler(request: Request, exc: ResearchDeskError):
        return JSONResponse(status_code=ERROR_STATUS.get(exc.kind, 500), content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"kind": "InputError", "message": str(exc)})

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "message": "ResearchDesk API is running"}

    # --- documents -----------------------------------------------------------

    @app.post("/documents", response_model=DocumentResponse, status_code=201)
    async def create_document(body: DocumentTextRequest, services: Services = Depends(get_services)):
        doc = services.pipeline.ingest_text(body.filename, body.text)
        if body.batch_id:
            services.batches.add_document(body.batch_id, doc.id)
        return DocumentResponse.model_validate(doc)

    @app.post("/documents/upload", response_model=DocumentResponse, status_code=201)
    async def upload_document(
        file: UploadFile = File(...),
        batch_id: Optional[str] = Form(default=None),
        services: Services = Depends(get_services),
    ):
        if not (file.filename or "").lower().endswith(".pdf"):
            raise HTTPException(status_code=400, detail="Only PDF files are supported")
        content = await file.read(services.settings.max_upload_bytes + 1)
        if len(content) > services.settings.max_upload_bytes:
            raise HTTPException(status_code=413, detail="File too large")
        doc = services.pipeline.ingest_pdf(file.filename, content)
        if batch_id:
            services.batches.add_document(batch_id, doc.id)
        return DocumentResponse.model_validate(doc)

    @app.get("/documents", response_model=List[DocumentResponse])
    async def list_documents(services: Services = Depends(get_services)):
        return [DocumentResponse.model_validate(d) for d in services.store.list_documents()]

    @app.get("/documents/{document_id}", response_model=DocumentDetailResponse)
    async def get_document(document_id: str, services: Services = Depends(get_services)):
        return DocumentDetailResponse.model_validate(services.store.require_document(document_id))

    @app.delete("/documents/{document_id}", status_code=204)
    async def delete_document(document_id: str, services: Services = Depends(get_services)):
        services.store.delete_document(document_id)

    @app.post("/documents/{document_id}/extract", response_model=DocumentResponse)
    async def extract_document(
        document_id: str,
        model_config_id: Optional[str] = None,
        services: Services = Depends(get_services),
    ):
        model_config = services.registry.resolve(model_config_id)
        doc = await services.pipeline.run_extraction(document_id, model_config)
        return DocumentResponse.model_validate(doc)

    @app.post("/documents/extract", response_model=ExtractManyResponse)
    async def extract_documents(body: ExtractManyRequest, services: Services = Depends(get_services)):
        model_config = services.registry.resolve(body.model_config_id)
        report = await services.pipeline.extract_many(body.document_ids, model_config)
        return ExtractManyResponse(succeeded=report.succeeded, failed=report.failed)

    # --- batches -------------------------------------------------------------

    @app.post("/batches", response_model=BatchResponse, status_code=201)
    async def create_batch(body: BatchRequest, services: Services = Depends(get_services)):
        return BatchResponse.model_validate(services.batches.create_batch(body.name))

    @app.get("/batches", response_model=List[BatchResponse])
    async def list_batches(services: Services = Depends(get_services)):
        return [BatchResponse.model_validate(b) for b in services.batches.list_batches()]

    @app.patch("/batches/{batch_id}", response_model=BatchResponse)
    async def rename_batch(batch_id: str, body: BatchRequest, services: Services = Depends(get_services)):
        return BatchResponse.model_validate(services.batches.rename_batch(batch_id, body.name))

    @app.delete("/batches/{batch_id}", status_code=204)
    async def delete_batch(batch_id: str, services: Services = Depends(get_services)):
        services.batches.delete_batch(batch_id)

    @app.get("/batches/{batch_id}/documents", response_model=List[DocumentResponse])
    async def list_batch_documents(batch_id: str, services: Services = Depends(get_services)):
        return [DocumentResponse.model_validate(d) for d in services.batches.list_documents(batch_id)]

    @app.put("/batches/{batch_id}/documents/{document_id}")
    async def add_batch_document(batch_id: str, document_id: str, services: Services = Depends(get_services)):
        return {"added": services.batches.add_document(batch_id, document_id)}

    @app.delete("/batches/{batch_id}/documents/{document_id}")
    async def remove_batch_document(batch_id: str, document_id: str, services: Services = Depends(get_services)):
        return {"removed": services.batches.remove_document(batch_id, document_id)}

    # --- searches & papers ----------------------------------------------------

    @app.post("/searches", response_model=SearchResponse, status_code=201)
    async def create_search(body: SearchRequest, services: Services = Depends(get_services)):
        search = services.store.create_search(body.query)
        papers = [services.store.add_paper(search.id, **paper.model_dump()) for paper in body.papers]
        return SearchResponse(
            id=search.id,
            query=search.query,
            papers=[PaperResponse.model_validate(p) for p in papers],
        )

    @app.get("/searches/{search_id}/papers", response_model=List[PaperResponse])
    async def list_papers(search_id: str, services: Services = Depends(get_services)):
        if services.store.get_search(search_id) is None:
            raise NotFoundError(f"Search {search_id} not found")
        return [PaperResponse.model_validate(p) for p in services.store.list_papers(search_id)]

    @app.delete("/searches/{search_id}", status_code=204)
    async def delete_search(search_id: str, services: Services = Depends(get_services)):
        services.store.delete_search(search_id)

    # --- model configs --------------------------------------------------------

    @app.get("/model-configs", response_model=List[ModelConfigResponse])
    async def list_model_configs(services: Services = Depends(get_services)):
        return [_model_config_response(c) for c in services.store.list_model_configs()]

    @app.post("/model-configs", response_model=ModelConfigResponse, status_code=201)
    async def create_model_config(body: ModelConfigRequest, services: Services = Depends(get_services)):
        snapshot = services.registry.create(**body.model_dump())
        return _model_config_response(services.store.get_model_config(snapshot.config_id))

    @app.put("/model-configs/{config_id}/default", response_model=ModelConfigResponse)
    async def set_default_model_config(config_id: str, services: Services = Depends(get_services)):
        services.registry.set_default(config_id)
        return _model_config_response(services.store.get_model_config(config_id))

    @app.delete("/model-configs/{config_id}", status_code=204)
    async def delete_model_config(config_id: str, services: Services = Depends(get_services)):
        services.registry.delete(config_id)

    # --- conversations --------------------------------------------------------

    @app.post("/conversations", response_model=ConversationDetailResponse, status_code=201)
    async def open_conversation(body: ConversationRequest, services: Services = Depends(get_services)):
        target = TargetRef(body.target_kind, body.target_id if body.target_kind != TargetKind.QUERY else None)
        conversation = services.conversations.open_conversation(target, title=body.title)
        return _conversation_detail(services, conversation.id)

    @app.get("/conversations")
    async def get_all_conversation_summaries(services: Services = Depends(get_services)):
        return services.conversations.get_conversation_summaries()

    @app.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
    async def get_conversation_detail(conversation_id: str, services: Services = Depends(get_services)):
        return _conversation_detail(services, conversation_id)

    @app.delete("/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(conversation_id: str, services: Services = Depends(get_services)):
        await services.conversations.delete_conversation(conversation_id)

    @app.post("/conversations/{conversation_id}/cancel")
    async def cancel_exchange(conversation_id: str, services: Services = Depends(get_services)):
        return {"cancelled": await services.conversations.cancel(conversation_id)}

    # --- chat -----------------------------------------------------------------

    @app.post("/chat/stream")
    async def send_message_stream(request: UserRequest, services: Services = Depends(get_services)):
        """Streams tokens via SSE (Server Sent Events); the answer is saved once complete"""
        logger.info(f"Received question: {request.user_message[:100]}...")

        # Busy / resolution / config errors surface as HTTP errors before streaming starts
        stream = await services.conversations.send_message(
            request.conversation_id, request.user_message, request.model_config_id
        )

        async def event_generator():
            try:
                yield _sse({"type": "start", "conversation_id": request.conversation_id})
                async for chunk in stream:
                    yield _sse({"type": "token", "content": chunk})
                if stream.outcome == "completed":
                    yield _sse({"type": "complete", "conversation_id": request.conversation_id})
                else:
                    yield _sse({"type": "cancelled", "conversation_id": request.conversation_id})
            except ResearchDeskError as e:
                yield _sse({"type": "error", **e.to_dict()})
            finally:
                # Client went away mid-stream
                if not stream.done:
                    await stream.cancel()

        return StreamingResponse(event_generator(), media_type="text/event-stream")

    @app.post("/chat", response_model=ChatResponse)
    async def send_message(request: UserRequest, services: Services = Depends(get_services)):
        """Send a message and wait for the whole answer"""
        generation_start = time.time()
        stream = await services.conversations.send_message(
            request.conversation_id, request.user_message, request.model_config_id
        )
        answer = await stream.collect()
        generation_time_ms = (time.time() - generation_start) * 1000
        logger.info(f"Generated answer for {request.conversation_id} in {generation_time_ms:.0f}ms")
        return ChatResponse(
            conversation_id=request.conversation_id,
            user_message=request.user_message,
            generated_response=answer or "",
            generation_time_ms=generation_time_ms,
        )

    @app.get("/")
    async def root():
        return {"message": "Welcome to ResearchDesk API", "docs": "/docs"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000)
