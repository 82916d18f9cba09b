import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.database import init_db
from app.deps import get_join_request_service
from app.routes import activities, chat, join_requests, users
from app.services.errors import JoinRequestError, Transient
from app.worker.expiry_worker import ExpiryWorker

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup resources."""
    configure_logging()
    await init_db()

    worker = None
    if settings.run_expiry_worker and settings.request_ttl_hours > 0:
        worker = ExpiryWorker(get_join_request_service())
        worker.start()
    yield
    if worker:
        worker.shutdown()


app = FastAPI(
    title='Friender API',
    description='Join requests and their conversations for Friender activities',
    version='0.1.0',
    lifespan=lifespan,
)

# CORS for mobile app
app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


@app.exception_handler(JoinRequestError)
async def join_request_error_handler(request: Request, exc: JoinRequestError):
    """Render typed core failures as {'detail', 'code'}."""
    if isinstance(exc, Transient):
        logger.warning(f'{request.method} {request.url.path} failed: {exc.detail}')
    return JSONResponse(
        status_code=exc.status_code,
        content={'detail': exc.detail, 'code': exc.code},
    )


# Routes
app.include_router(users.router, prefix='/api/users', tags=['users'])
app.include_router(activities.router, prefix='/api/activities', tags=['activities'])
app.include_router(join_requests.router, prefix='/api/join-requests', tags=['join-requests'])
app.include_router(chat.router, prefix='/api/chat', tags=['chat'])


@app.get('/health')
async def health_check():
    """Health check endpoint."""
    return {'status': 'ok', 'service': 'friender-api'}
