from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import database
from .errors import register_exception_handlers
from .logging_config import logger
from .middleware import RequestLoggingMiddleware
from .routes import assignments, auth, courses, files, notifications, tasks
from .settings import DEFAULT_JWT_SECRET, settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.is_production and settings.JWT_SECRET_KEY == DEFAULT_JWT_SECRET:
        logger.warning("JWT_SECRET_KEY is the built-in default; set a real secret for production")
    database.connect()
    yield
    database.disconnect()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

register_exception_handlers(app)

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(assignments.router, prefix="/api/assignments", tags=["assignments"])
app.include_router(files.router, prefix="/api/files", tags=["files"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(courses.router, prefix="/api/courses", tags=["courses"])


# ----------------------
# Meta & health
# ----------------------
@app.get("/")
def read_root():
    return {"message": settings.APP_NAME}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT,
        "database": "connected" if database.db is not None else "not connected",
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": settings.DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response

    response["connection_status"] = "Connected"
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        logging.getLogger("iqac.diagnostics").warning(f"Database check failed: {e}")
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
