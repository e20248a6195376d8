import sys

from loguru import logger

from task_deadline_mcp.settings import Settings


def setup_logging(settings: Settings) -> None:
    """
    Configure logging for the application.
    """

    # Remove default handler to avoid duplicate logs
    logger.remove()

    # stderr only: stdout carries the MCP stdio transport
    logger.add(
        sys.stderr,
        level=settings.logging_level,
        format=settings.logging_format,
        colorize=False,
        backtrace=True,
        diagnose=False,
        enqueue=True,
        catch=True,
    )

    logger.configure(extra={"app": settings.app_name, "version": settings.app_version})

    logger.info(
        "Logging system initialized",
        log_level=settings.logging_level,
    )
