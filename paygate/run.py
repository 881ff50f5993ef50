# -*- coding: utf-8 -*-
# paygate/run.py
# =============================================================================
# Назначение:
#   Точка входа процесса Paygate: HTTP API, воркер вебхуков и планировщик
#   в одном процессе uvicorn.
#
#   python -m paygate.run                  # API + фоновые циклы
#   python -m paygate.run --api-only       # без воркера и планировщика
#   python -m paygate.run --port 9000
#
# Канон:
#   • Один процесс uvicorn (workers=1): фоновые циклы не должны
#     дублироваться; горизонтальное масштабирование держится на
#     advisory-локах PostgreSQL.
# =============================================================================

from __future__ import annotations

import argparse
from typing import List, Optional

import uvicorn

from paygate.app import create_app
from paygate.app.core.config_core import get_settings
from paygate.app.core.logging_core import get_logger

logger = get_logger(__name__)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="paygate", description="Paygate payment gateway")
    parser.add_argument("--host", default=None, help="override APP_HOST")
    parser.add_argument("--port", type=int, default=None, help="override APP_PORT")
    parser.add_argument("--api-only", action="store_true", help="do not start webhook worker and scheduler")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    settings = get_settings()
    settings.initialize_runtime()

    host = args.host or settings.APP_HOST
    port = args.port or settings.APP_PORT
    logger.info(
        "Starting paygate",
        extra={"host": host, "port": port, "env": settings.env_normalized, "background": not args.api_only},
    )
    app = create_app(settings, start_background=not args.api_only)
    # log_config=None: uvicorn пишет через корневой логгер из logging_core.
    uvicorn.run(app, host=host, port=port, workers=1, log_config=None)


if __name__ == "__main__":
    main()
