"""
Main entry point for the JIRA Sync Operator API.
"""

from .api import app  # noqa: F401

if __name__ == "__main__":
    import uvicorn

    from .config import get_settings
    from .logging_config import configure_logging

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        "jira_sync_operator.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        # one process: the embedded control loop keeps in-memory state
        workers=1,
    )
