from __future__ import annotations

import logging

import uvicorn

from order_engine import __version__
from order_engine.api.app import create_app
from order_engine.common.config import EngineConfig
from order_engine.common.logging import init_structured_logging, log_event

logger = logging.getLogger(__name__)


def main() -> None:
    config = EngineConfig.from_env()
    init_structured_logging(service=config.service_name, env=config.env, version=__version__, level=config.log_level)
    log_event(
        logger,
        "service.starting",
        host=config.host,
        port=config.port,
        queue_backend=config.queue_backend,
        cache_backend=config.cache_backend,
        repository_backend=config.repository_backend,
    )
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower(), access_log=False)


if __name__ == "__main__":
    main()
