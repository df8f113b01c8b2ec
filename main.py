"""Main entry point for running the FastAPI application with auto-reload."""
import uvicorn

from be.config import settings

if __name__ == "__main__":
    print(f"Starting {settings.app_name} v{settings.version}")
    print(f"Debug mode: {settings.debug}")
    print(f"Database: {settings.db.url.split('@')[-1]}")
    print(f"Import chunk size: {settings.imports.chunk_size}, scorer: {settings.imports.scorer.value}")
    print("-" * 50)

    uvicorn.run(
        "be.api:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["be"] if settings.debug else None,
        log_level=settings.logging.level.lower(),
    )
