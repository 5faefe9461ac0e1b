import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import settings
from errors import ServerError, error_body, pydantic_messages
from routes import admins, jobs, users

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("servicehub")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Without the database there is nothing to serve: let startup fail.
    try:
        db = database.connect()
        database.ensure_indexes(db)
    except Exception:
        logger.exception("MongoDB connection error")
        raise
    logger.info("MongoDB connected successfully.")
    yield
    database.close()


# App & CORS
app = FastAPI(title=f"{settings.APP_NAME} API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(users.router)
app.include_router(jobs.router)
app.include_router(admins.router)


# ----------------------------
# Error envelope
# ----------------------------

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        error_body(exc), status_code=exc.status_code, headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"success": False, "message": "Validation failed", "details": pydantic_messages(exc.errors())},
        status_code=400,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(error_body(ServerError()), status_code=500)


# ----------------------------
# Basic routes
# ----------------------------

@app.get("/")
def read_root():
    return {"message": f"{settings.APP_NAME} backend is running!"}


@app.get("/test")
def database_status():
    """Report whether the MongoDB connection is usable and which collections exist."""
    report = {
        "backend": "running",
        "database": settings.DATABASE_NAME,
        "databaseUrlSet": bool(settings.DATABASE_URL),
        "connected": False,
        "collections": [],
    }
    try:
        db = database.get_db()
        report["collections"] = sorted(db.list_collection_names())[:10]
        report["connected"] = True
    except ServerError as exc:
        report["error"] = exc.detail
    except PyMongoError as exc:
        logger.warning("Database status check failed: %s", exc)
        report["error"] = str(exc)[:100]
    return report


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
