"""
HRMS Approvals - Main Server

Entry point. Routes are organized in /routes/, business logic in /services/.
"""

from fastapi import FastAPI, APIRouter, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
from dataclasses import dataclass
import traceback
import logging

from services.app_config import (
    ADMIN_IP_WHITELIST, ADMIN_PATH_PREFIXES, CORS_ORIGINS, DB_NAME, IP_WHITELIST_ENABLED,
    MONGO_TIMEOUT_MS, MONGO_URL, OUTBOX_MAX_ATTEMPTS, OUTBOX_RETRY_DELAY_SECONDS,
    RATE_LIMIT_PER_MIN, RATE_LIMIT_WINDOW_SECONDS, TRUSTED_PROXIES,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import (
    audit_logs, auth, employees, goals, pips,
    travel_advances, travel_claims, travel_policies, travel_requests,
)

# ==================== SERVICES ====================
from services.approval_engine import WorkflowError
from services.audit_service import AuditSink
from services.email_service import EmailService
from services.employee_directory import EmployeeDirectory
from services.entity_store import COLLECTIONS, EntityStore
from services.notification_service import Notifier
from services.outbox import SideEffectOutbox
from services.policy_provider import PolicyProvider
from services.request_guards import IPWhitelistMiddleware, RateLimitMiddleware
from services.workflow_service import WorkflowService

SERVICE_NAME = "HRMS Approvals"
VERSION = "1.0.0"

db = None
mongo_client = None
services = None


@dataclass
class Services:
    store: EntityStore
    policies: PolicyProvider
    employees: EmployeeDirectory
    email: EmailService
    audit: AuditSink
    notifier: Notifier
    outbox: SideEffectOutbox
    workflow: WorkflowService


def wire_dependencies(database, max_attempts: int = OUTBOX_MAX_ATTEMPTS,
                      retry_delay: float = OUTBOX_RETRY_DELAY_SECONDS) -> Services:
    """Build the service graph on a database handle and hand it to the routers."""
    store = EntityStore(database)
    policies = PolicyProvider(database)
    directory = EmployeeDirectory(database)
    email = EmailService(db=database)
    audit = AuditSink(database)
    notifier = Notifier(email, audit_sink=audit)
    outbox = SideEffectOutbox(notifier, audit, max_attempts=max_attempts, retry_delay=retry_delay)
    workflow = WorkflowService(store, outbox)

    travel_requests.set_dependencies(store, policies, directory, workflow)
    travel_advances.set_dependencies(store, policies, directory, workflow)
    travel_claims.set_dependencies(store, policies, directory, workflow)
    travel_policies.set_dependencies(database, workflow)
    goals.set_dependencies(store, directory, workflow)
    pips.set_dependencies(store, directory, workflow)
    employees.set_dependencies(database, workflow)
    audit_logs.set_db(database)
    auth.set_dependencies(directory)

    return Services(store, policies, directory, email, audit, notifier, outbox, workflow)


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client, services

    logger.info("Starting %s...", SERVICE_NAME)

    mongo_client = AsyncIOMotorClient(
        MONGO_URL,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        socketTimeoutMS=MONGO_TIMEOUT_MS,
    )
    db = mongo_client[DB_NAME]

    services = wire_dependencies(db)
    await create_indexes(db)
    services.outbox.start()

    logger.info("%s started successfully", SERVICE_NAME)

    yield

    logger.info("Shutting down %s...", SERVICE_NAME)
    await services.outbox.stop()
    if mongo_client:
        mongo_client.close()


async def create_indexes(database):
    """Create database indexes."""
    for collection in COLLECTIONS.values():
        await database[collection].create_index([("tenant_id", 1), ("id", 1)], unique=True)
        await database[collection].create_index([("tenant_id", 1), ("status", 1)])
        await database[collection].create_index([("tenant_id", 1), ("employee_id", 1)])

    await database.travel_claims.create_index("travel_request_id")
    await database.travel_advances.create_index("travel_request_id")
    await database.goals.create_index([("tenant_id", 1), ("employee_id", 1), ("appraisal_cycle_id", 1)])

    await database.travel_policies.create_index([("tenant_id", 1), ("grade", 1)], unique=True)
    await database.employees.create_index([("tenant_id", 1), ("id", 1)], unique=True)
    await database.employees.create_index([("tenant_id", 1), ("employee_code", 1)], unique=True)
    await database.audit_logs.create_index([("tenant_id", 1), ("timestamp", -1)])
    await database.email_logs.create_index("sent_at")

    logger.info("Database indexes created")


# ==================== APP SETUP ====================
app = FastAPI(
    title=SERVICE_NAME,
    description="Approval workflows for travel, goals and performance improvement plans",
    version=VERSION,
    lifespan=lifespan
)

# Added last runs first: rate limit, then IP whitelist, then CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    IPWhitelistMiddleware,
    enabled=IP_WHITELIST_ENABLED,
    whitelist=ADMIN_IP_WHITELIST,
    path_prefixes=ADMIN_PATH_PREFIXES,
    trusted_proxies=TRUSTED_PROXIES,
)
app.add_middleware(
    RateLimitMiddleware,
    limit_per_minute=RATE_LIMIT_PER_MIN,
    window_seconds=RATE_LIMIT_WINDOW_SECONDS,
    trusted_proxies=TRUSTED_PROXIES,
)


# ==================== EXCEPTION HANDLERS ====================
@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {"code": "VALIDATION_ERROR", "message": "Invalid request", "details": {"errors": errors}},
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    codes = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 429: "RATE_LIMITED"}
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": {"code": codes.get(exc.status_code, "HTTP_ERROR"), "message": exc.detail, "details": {}},
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc)
    logger.error("Traceback:\n%s", traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred", "details": {}},
        },
    )


# API Router with /api prefix
api_router = APIRouter(prefix="/api")

api_router.include_router(auth.router)
api_router.include_router(travel_requests.router)
api_router.include_router(travel_advances.router)
api_router.include_router(travel_claims.router)
api_router.include_router(travel_policies.router)
api_router.include_router(goals.router)
api_router.include_router(pips.router)
api_router.include_router(employees.router)
api_router.include_router(audit_logs.router)

app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "hrms-approvals"
    }
