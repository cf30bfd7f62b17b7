"""FastAPI application for document uploads and knowledge sharing."""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import logging
import mimetypes
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, Response, UploadFile
from fastapi.responses import FileResponse, RedirectResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

from pydantic import BaseModel, ConfigDict

from .auth import (
    Authenticator,
    current_session,
    get_authenticator,
    require_user,
    session_token,
)
from .config import Settings, settings
from .database import LoginSession, create_db_engine, init_db, make_session_factory
from .services import DocumentStore, KnowledgeStore, iter_file


logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"

SENSITIVE_RATE_LIMIT = "5/minute"
SENSITIVE_HOURLY_RATE_LIMIT = "100/hour"

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)

router = APIRouter()
pages = APIRouter(include_in_schema=False)


async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status="500",
        ).inc()
        logger.exception(
            "error handling %s %s", request.method, request.url.path
        )
        raise


def get_documents(request: Request) -> DocumentStore:
    return request.app.state.documents


def get_knowledge(request: Request) -> KnowledgeStore:
    return request.app.state.knowledge


class RequestBody(BaseModel):
    """JSON body whose fields may be absent or null; emptiness is checked by the services."""

    model_config = ConfigDict(coerce_numbers_to_str=True)


class Credentials(RequestBody):
    """Request body for registration and login."""

    username: Optional[str] = None
    password: Optional[str] = None


class DocumentResponse(BaseModel):
    """Serialized document metadata."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    file_path: str
    original_filename: str
    author: str
    upload_date: datetime
    update_date: datetime


class ArticleCreate(RequestBody):
    """Request body for a new article. The author is the logged-in user."""

    title: Optional[str] = None
    content: Optional[str] = None


class ArticleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    content: str
    author: str
    created_at: datetime
    updated_at: datetime


class CommentCreate(RequestBody):
    content: Optional[str] = None


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    article_id: int
    content: str
    author: str
    created_at: datetime


class CreatedResponse(BaseModel):
    message: str
    id: int


# -- authentication ---------------------------------------------------------


def credential_routes(limiter: Limiter) -> APIRouter:
    """Register and login, rate limited by the application's own limiter."""
    credentials = APIRouter()

    @credentials.post("/api/register", status_code=201)
    @limiter.limit(SENSITIVE_RATE_LIMIT)
    @limiter.limit(SENSITIVE_HOURLY_RATE_LIMIT)
    def register(
        request: Request,
        payload: Credentials,
        auth: Authenticator = Depends(get_authenticator),
    ) -> Dict[str, str]:
        """Create an account. The caller still has to log in afterwards."""
        auth.register(payload.username, payload.password)
        return {"message": "User registered successfully"}

    @credentials.post("/api/login")
    @limiter.limit(SENSITIVE_RATE_LIMIT)
    @limiter.limit(SENSITIVE_HOURLY_RATE_LIMIT)
    def login(
        request: Request,
        response: Response,
        payload: Credentials,
        auth: Authenticator = Depends(get_authenticator),
    ) -> Dict[str, str]:
        record = auth.login(payload.username, payload.password)
        app_settings: Settings = request.app.state.settings
        response.set_cookie(
            auth.cookie_name,
            record.token,
            max_age=int(auth.session_ttl.total_seconds()),
            httponly=True,
            samesite="lax",
            secure=app_settings.session_cookie_secure,
        )
        return {"message": "Logged in", "username": record.username}

    return credentials


@router.post("/api/logout")
def logout(
    response: Response,
    token: Optional[str] = Depends(session_token),
    auth: Authenticator = Depends(get_authenticator),
) -> Dict[str, str]:
    auth.logout(token)
    response.delete_cookie(auth.cookie_name)
    return {"message": "Logged out"}


@router.get("/api/auth_status")
def auth_status(
    token: Optional[str] = Depends(session_token),
    auth: Authenticator = Depends(get_authenticator),
) -> Dict[str, Any]:
    return auth.auth_status(token)


# -- documents --------------------------------------------------------------


@router.get("/api/documents", response_model=List[DocumentResponse])
def list_documents(
    user: LoginSession = Depends(require_user),
    documents: DocumentStore = Depends(get_documents),
):
    """Return all documents, newest first."""
    return documents.list()


@router.post("/api/upload", response_model=CreatedResponse)
def upload_document(
    title: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    user: LoginSession = Depends(require_user),
    documents: DocumentStore = Depends(get_documents),
):
    """Accept a multipart upload; the author is the logged-in user."""
    document_id = documents.upload(
        title=title,
        author=user.username,
        stream=file.file if file is not None else None,
        original_filename=file.filename if file is not None else None,
    )
    return CreatedResponse(message="File uploaded successfully", id=document_id)


@router.get("/api/download/{document_id}")
def download_document(
    document_id: int,
    user: LoginSession = Depends(require_user),
    documents: DocumentStore = Depends(get_documents),
):
    document, stream = documents.download(document_id)
    media_type = mimetypes.guess_type(document.original_filename)[0] or "application/octet-stream"
    return StreamingResponse(
        iter_file(stream),
        media_type=media_type,
        headers={"Content-Disposition": _attachment(document.original_filename)},
    )


def _attachment(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


@router.delete("/api/documents/{document_id}")
def delete_document(
    document_id: int,
    user: LoginSession = Depends(require_user),
    documents: DocumentStore = Depends(get_documents),
) -> Dict[str, str]:
    documents.delete(document_id)
    return {"message": "Document deleted successfully"}


# -- knowledge --------------------------------------------------------------


@router.get("/api/articles", response_model=List[ArticleResponse])
def list_articles(
    user: LoginSession = Depends(require_user),
    knowledge: KnowledgeStore = Depends(get_knowledge),
):
    return knowledge.list_articles()


@router.get("/api/articles/{article_id}", response_model=ArticleResponse)
def get_article(
    article_id: int,
    user: LoginSession = Depends(require_user),
    knowledge: KnowledgeStore = Depends(get_knowledge),
):
    return knowledge.get_article(article_id)


@router.get("/api/articles/{article_id}/comments", response_model=List[CommentResponse])
def list_comments(
    article_id: int,
    user: LoginSession = Depends(require_user),
    knowledge: KnowledgeStore = Depends(get_knowledge),
):
    return knowledge.list_comments(article_id)


@router.post("/api/articles", response_model=CreatedResponse)
def create_article(
    payload: ArticleCreate,
    user: LoginSession = Depends(require_user),
    knowledge: KnowledgeStore = Depends(get_knowledge),
):
    article_id = knowledge.create_article(payload.title, payload.content, user.username)
    return CreatedResponse(message="Article created successfully", id=article_id)


@router.post("/api/articles/{article_id}/comments", response_model=CreatedResponse)
def create_comment(
    article_id: int,
    payload: CommentCreate,
    user: LoginSession = Depends(require_user),
    knowledge: KnowledgeStore = Depends(get_knowledge),
):
    comment_id = knowledge.create_comment(article_id, payload.content, user.username)
    return CreatedResponse(message="Comment posted successfully", id=comment_id)


@router.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# -- pages ------------------------------------------------------------------


def _protected_page(record: Optional[LoginSession], filename: str) -> Response:
    if record is None:
        return RedirectResponse("/login", status_code=303)
    return FileResponse(STATIC_DIR / filename)


@pages.get("/")
def index_page(record: Optional[LoginSession] = Depends(current_session)):
    return _protected_page(record, "index.html")


@pages.get("/upload")
def upload_page(record: Optional[LoginSession] = Depends(current_session)):
    return _protected_page(record, "index.html")


@pages.get("/documents")
def documents_page(record: Optional[LoginSession] = Depends(current_session)):
    return _protected_page(record, "documents.html")


@pages.get("/knowledge")
def knowledge_page(record: Optional[LoginSession] = Depends(current_session)):
    return _protected_page(record, "knowledge.html")


@pages.get("/knowledge/new")
def new_article_page(record: Optional[LoginSession] = Depends(current_session)):
    return _protected_page(record, "new-article.html")


@pages.get("/knowledge/{article_id}")
def article_page(article_id: int, record: Optional[LoginSession] = Depends(current_session)):
    return _protected_page(record, "article.html")


@pages.get("/login")
def login_page():
    return FileResponse(STATIC_DIR / "login.html")


@pages.get("/register")
def register_page():
    return FileResponse(STATIC_DIR / "register.html")


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Build the application with its own engine and service objects."""
    app_settings = app_settings or settings
    engine = create_db_engine(app_settings.database_url)
    init_db(engine)
    session_factory = make_session_factory(engine)

    documents = DocumentStore(session_factory, app_settings)
    if app_settings.reconcile_uploads_on_startup:
        documents.sweep_orphans()

    app = FastAPI(title=app_settings.api_title)
    app.state.settings = app_settings
    app.state.authenticator = Authenticator(session_factory, app_settings)
    app.state.documents = documents
    app.state.knowledge = KnowledgeStore(session_factory)

    limiter = Limiter(key_func=get_remote_address, enabled=app_settings.rate_limit_enabled)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.middleware("http")(log_requests)

    app.include_router(credential_routes(limiter))
    app.include_router(router)
    app.include_router(pages)
    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")
    logger.info("application ready (database %s)", app_settings.database_url)
    return app


def serve(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the application under uvicorn."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        create_app(),
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )
