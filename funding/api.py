import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .db import create_db_engine, init_db, make_session_factory
from .errors import (
    ForbiddenError,
    FundingServiceError,
    InvalidInputError,
    ResourceNotFoundError,
    StateConflictError,
)
from .identity import SessionManager, get_current_user_id, hash_password, verify_password
from .logging_config import configure_logging
from .models import (
    CreateProjectRequest,
    CreateRefundRequest,
    FundProjectRequest,
    MessageResponse,
    ProcessRefundRequest,
    Project,
    ProjectWithCreator,
    ProjectWithStats,
    RefundRequest,
    Transaction,
    UpsertUser,
    User,
    UserResponse,
)
from .service import FundingService
from .storage import SqlLedgerStore
from .timeutils import utcnow

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
    (ResourceNotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (StateConflictError, status.HTTP_400_BAD_REQUEST),
)


def status_for(exc: FundingServiceError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


# --- Exception handlers ---

async def funding_error_handler(request: Request, exc: FundingServiceError) -> JSONResponse:
    status_code = status_for(exc)
    logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc)
    return JSONResponse(status_code=status_code, content={"message": str(exc), "code": exc.code})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.warning("%s %s validation error: %s", request.method, request.url.path, errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"message": "Validation error", "code": "VALIDATION_ERROR", "errors": errors},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = str(uuid.uuid4())
    logger.error(
        "[%s] Unhandled exception on %s %s: %s",
        request_id, request.method, request.url.path, exc, exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "An unexpected error occurred", "requestId": request_id},
    )


# --- Dependencies ---

def get_service(request: Request) -> FundingService:
    return request.app.state.funding_service


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def start_session(request: Request, response: Response, user: User) -> None:
    settings: Settings = request.app.state.settings
    sid = request.app.state.session_manager.create(user.id, {"email": user.email})
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        sid,
        max_age=settings.SESSION_TTL_SECONDS,
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite="lax",
    )


# --- Funding routes ---

router = APIRouter(prefix="/api")


@router.get("/projects", response_model=list[Project], tags=["Projects"])
def list_projects(
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    return service.list_projects()


@router.get("/projects/{project_id}", response_model=ProjectWithCreator, tags=["Projects"])
def get_project(
    project_id: int,
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    return service.get_project(project_id)


@router.post("/projects", response_model=Project, status_code=status.HTTP_201_CREATED, tags=["Projects"])
def create_project(
    request: CreateProjectRequest,
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    return service.create_project(user_id, request)


@router.get("/projects/{project_id}/transactions", response_model=list[Transaction], tags=["Transactions"])
def list_project_transactions(
    project_id: int,
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    return service.list_transactions(project_id)


@router.post(
    "/projects/{project_id}/fund",
    response_model=Transaction,
    status_code=status.HTTP_201_CREATED,
    tags=["Transactions"],
)
def fund_project(
    project_id: int,
    request: FundProjectRequest,
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    return service.record_contribution(
        project_id,
        donor_id=user_id,
        wallet_address=request.donor_wallet_address,
        amount=request.amount,
        transaction_type=request.transaction_type,
        transaction_hash=request.transaction_hash,
    )


@router.post("/projects/{project_id}/withdraw", response_model=MessageResponse, tags=["Projects"])
def withdraw_funds(
    project_id: int,
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    service.withdraw(project_id, user_id)
    return MessageResponse(message="Funds withdrawn successfully")


@router.get("/my-projects", response_model=list[ProjectWithStats], tags=["Projects"])
def list_my_projects(
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    return service.list_my_projects(user_id)


@router.get("/refund-requests", response_model=list[RefundRequest], tags=["Refunds"])
def list_refund_requests(
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    return service.list_refund_requests(user_id)


@router.post(
    "/refund-requests",
    response_model=RefundRequest,
    status_code=status.HTTP_201_CREATED,
    tags=["Refunds"],
)
def create_refund_request(
    request: CreateRefundRequest,
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    return service.request_refund(request.project_id, user_id, request.transaction_id, request.amount)


@router.post("/refund-requests/{refund_id}/process", response_model=MessageResponse, tags=["Refunds"])
def process_refund_request(
    refund_id: int,
    request: ProcessRefundRequest,
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    service.process_refund(refund_id, user_id, request.approved)
    return MessageResponse(message="Refund request processed successfully")


# --- Identity routes ---

auth_router = APIRouter(prefix="/api", tags=["Auth"])
local_auth_router = APIRouter(prefix="/api", tags=["Auth"])


@auth_router.get("/auth/user", response_model=User)
def get_auth_user(
    user_id: str = Depends(get_current_user_id),
    service: FundingService = Depends(get_service),
):
    user = service.store.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user


@auth_router.get("/logout")
def logout(request: Request, response: Response, settings: Settings = Depends(get_app_settings)):
    request.app.state.session_manager.destroy(request.cookies.get(settings.SESSION_COOKIE_NAME))
    response.delete_cookie(settings.SESSION_COOKIE_NAME)
    return {"ok": True}


@local_auth_router.post("/mock-login", response_model=UserResponse)
def mock_login(
    request: Request,
    response: Response,
    body: Optional[dict] = Body(default=None),
    service: FundingService = Depends(get_service),
):
    body = body or {}
    user = service.store.upsert_user(UpsertUser(
        id=body.get("id") or f"local-dev-user-{uuid.uuid4().hex[:12]}",
        email=body.get("email") or "dev@example.com",
        first_name=body.get("first_name") or "Dev",
        last_name=body.get("last_name") or "User",
        profile_image_url=body.get("profile_image_url"),
    ))
    start_session(request, response, user)
    return UserResponse(user=user)


@local_auth_router.post("/signup", response_model=UserResponse)
def signup(
    request: Request,
    response: Response,
    body: Optional[dict] = Body(default=None),
    service: FundingService = Depends(get_service),
):
    body = body or {}
    email = body.get("email")
    if not email:
        raise InvalidInputError("Email required")
    if service.store.get_user_by_email(email) is not None:
        raise InvalidInputError("Email already registered")

    password = body.get("password")
    user = service.store.upsert_user(UpsertUser(
        id=uuid.uuid4().hex,
        email=email,
        password_hash=hash_password(password) if password else None,
        first_name=body.get("first_name") or "",
        last_name=body.get("last_name") or "",
        profile_image_url=body.get("profile_image_url"),
    ))
    start_session(request, response, user)
    return UserResponse(user=user)


@local_auth_router.post("/local-login", response_model=UserResponse)
def local_login(
    request: Request,
    response: Response,
    body: Optional[dict] = Body(default=None),
    service: FundingService = Depends(get_service),
):
    body = body or {}
    email, password = body.get("email"), body.get("password")
    if not email or not password:
        raise InvalidInputError("Email and password required")

    user = service.store.get_user_by_email(email)
    if user is None or not verify_password(user.password_hash, password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    start_session(request, response, user)
    return UserResponse(user=user)


# --- Application factory ---

def create_app(
    settings: Optional[Settings] = None,
    service: Optional[FundingService] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    engine = create_db_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    init_db(engine)
    session_factory = make_session_factory(engine)

    if service is None:
        service = FundingService(SqlLedgerStore(session_factory), clock=clock)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Crowdfunding campaigns with real and demo contributions, withdrawals and refunds",
        version=settings.VERSION,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.funding_service = service
    app.state.session_manager = SessionManager(session_factory, settings.SESSION_TTL_SECONDS, clock=clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FundingServiceError, funding_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "blockfund"}

    app.include_router(auth_router)
    if settings.ENABLE_LOCAL_AUTH:
        app.include_router(local_auth_router)
    app.include_router(router)

    logger.info("%s %s ready (local auth %s)", settings.PROJECT_NAME, settings.VERSION,
                "on" if settings.ENABLE_LOCAL_AUTH else "off")
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
