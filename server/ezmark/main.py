from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from loguru import logger
from ezmark.config import settings
from ezmark.database import init_db
from ezmark.middleware import StripPrefixMiddleware
import os

# Create public directories if they don't exist
os.makedirs(settings.uploads_dir, exist_ok=True)
os.makedirs(settings.pipeline_dir, exist_ok=True)
os.makedirs(settings.pdf_dir, exist_ok=True)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# /strapi/api/... -> /api/...
app.add_middleware(StripPrefixMiddleware, prefix=settings.strip_prefix)

# Mount static files for uploads, pipeline artifacts and exam PDFs
app.mount("/uploads", StaticFiles(directory=settings.uploads_dir), name="uploads")
app.mount("/pipeline", StaticFiles(directory=settings.pipeline_dir), name="pipeline")
app.mount("/pdf", StaticFiles(directory=settings.pdf_dir), name="pdf")


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    init_db()

    logger.info(f"{settings.app_name} is starting...")
    logger.info(f"Database: {settings.database_url}")
    logger.info(f"Public directory: {os.path.abspath(settings.public_dir)}")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.api_version,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


# Import and include routers
from ezmark.routes import content, pdfs, schedules  # noqa: E402

app.include_router(content.router, prefix=settings.rest_prefix, tags=["Content"])
app.include_router(schedules.router, prefix=settings.rest_prefix, tags=["Schedules"])
app.include_router(pdfs.router, prefix=settings.rest_prefix, tags=["PDF"])
