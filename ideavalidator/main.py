import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ideavalidator import billing, models, repository, schemas, services
from ideavalidator.ai_provider import AnalysisGateway
from ideavalidator.auth import create_access_token, get_current_user
from ideavalidator.config import Settings, get_settings
from ideavalidator.database import create_db_and_tables, get_db
from ideavalidator.errors import AppError

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)
STARTED_AT = time.monotonic()

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit], storage_uri="memory://")


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    app.state.gateway = AnalysisGateway.from_settings(settings)
    yield


app = FastAPI(
    title="Idea Validator",
    description="AI-assisted startup idea validation with credit-metered analyses.",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_origin_regex=r"https://.*\.vercel\.app",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing.router)


# ---- Error mapping ----
def _error_body(message: str, code: str, details=None) -> dict:
    body = {"error": message, "code": code}
    if details is not None:
        body["details"] = details
    return body


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} ({exc.status_code}): {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.code, exc.details))


# Sync: SlowAPIMiddleware calls the registered handler without awaiting it
@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit hit by {get_remote_address(request)} on {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=429,
        content=_error_body("Too many requests from this IP, please try again later.", "RATE_LIMITED"),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [{"loc": list(err.get("loc", [])), "msg": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(status_code=400, content=_error_body("Validation failed", "VALIDATION_ERROR", details))


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"{request.method} {request.url.path}: database error: {exc}")
    return JSONResponse(
        status_code=503,
        content=_error_body("Database connection issue. Please wait a moment and refresh.", "DATABASE_ERROR"),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path}: unhandled error")
    details = repr(exc) if settings.is_development else None
    return JSONResponse(status_code=500, content=_error_body("Internal server error", "INTERNAL_ERROR", details))


def get_gateway(request: Request) -> AnalysisGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = AnalysisGateway.from_settings(settings)
        request.app.state.gateway = gateway
    return gateway


@app.get("/health")
@limiter.exempt
def health():
    return {"status": "ok", "uptime": round(time.monotonic() - STARTED_AT, 1)}


# ---- Auth ----
@app.post("/auth/signup", response_model=schemas.AuthResponse, status_code=status.HTTP_201_CREATED)
def signup(request: schemas.SignupRequest, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    return services.signup(db, settings, request)


@app.post("/auth/login", response_model=schemas.AuthResponse)
def login(request: schemas.LoginRequest, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    return services.login(db, settings, request)


@app.post("/auth/token", response_model=schemas.Token)
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db),
                           settings: Settings = Depends(get_settings)):
    user = services.authenticate(db, form_data.username, form_data.password)
    return {"access_token": create_access_token(user, settings), "token_type": "bearer"}


@app.post("/auth/google", response_model=schemas.AuthResponse)
async def google_login(request: schemas.GoogleLoginRequest, db: Session = Depends(get_db),
                       settings: Settings = Depends(get_settings)):
    return await services.google_login(db, settings, request.token)


# ---- Users ----
@app.get("/users/me", response_model=schemas.UserProfile)
def read_me(current_user: models.User = Depends(get_current_user)):
    return services.to_profile(current_user)


@app.put("/users/profile", response_model=schemas.UserProfile)
def update_profile(update: schemas.ProfileUpdate, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    return services.update_profile(db, current_user, update)


@app.delete("/users/me", status_code=status.HTTP_204_NO_CONTENT)
def delete_me(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    services.delete_account(db, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---- Analysis ----
@app.post("/analyze", response_model=schemas.AnalyzeResponse)
async def analyze_idea(
    request: schemas.AnalyzeRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    gateway: AnalysisGateway = Depends(get_gateway),
):
    outcome = await services.run_analysis(
        db, current_user.id, request.idea, gateway,
        attachment=request.attachment, preferred_provider=request.provider,
    )
    return outcome.to_response()


@app.post("/chat", response_model=schemas.ChatResponse)
async def chat(
    request: schemas.ChatRequest,
    current_user: models.User = Depends(get_current_user),
    gateway: AnalysisGateway = Depends(get_gateway),
):
    text = await services.chat_about_report(gateway, request)
    return schemas.ChatResponse(text=text)


# ---- Reports ----
@app.get("/reports", response_model=list[schemas.ReportItem])
def list_reports(limit: int = 20, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user),
                 settings: Settings = Depends(get_settings)):
    rows = repository.list_reports(db, current_user.id, limit=limit, page_size=settings.report_page_size)
    return [repository.to_report_item(row) for row in rows]


@app.get("/reports/{report_id}", response_model=schemas.ReportItem)
def read_report(report_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return repository.to_report_item(repository.get_report(db, current_user.id, report_id))


@app.delete("/reports", status_code=status.HTTP_204_NO_CONTENT)
def clear_history(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    deleted = repository.delete_reports(db, current_user.id)
    logger.info(f"User {current_user.id} cleared {deleted} report(s)")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---- Waitlist ----
@app.post("/waitlist", response_model=schemas.WaitlistResponse)
def join_waitlist(request: schemas.WaitlistRequest, db: Session = Depends(get_db)):
    entry = services.join_waitlist(db, request)
    return schemas.WaitlistResponse(success=True, id=entry.id)
