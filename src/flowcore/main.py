from __future__ import annotations

from flowcore.config import load_settings
from flowcore.logging import configure_logging, get_logger


def main() -> int:
    """
    Programmatic entrypoint.

    Recommended dev command:
      uvicorn flowcore.api.app:app --reload

    This entrypoint exists so you can also do:
      python -m flowcore.main
    """
    settings = load_settings()
    configure_logging(settings.log_level)
    log = get_logger(__name__)

    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    log.info("Starting flowcore with DB path: %s", settings.db_path)

    import uvicorn

    uvicorn.run(
        "flowcore.api.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=False,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
