from __future__ import annotations

import uvicorn

from studio.config import get_settings
from studio.utils.logging import configure_logging, get_logger
from studio.web.app import create_app


logger = get_logger('main')


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    if settings.generation_maintenance:
        logger.warning('generation_maintenance_enabled')
    app = create_app(settings=settings)
    uvicorn.run(
        app,
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == '__main__':
    main()
