"""Entry point for the pipeline orchestrator."""

from __future__ import annotations

import asyncio

from carebridge_framework import setup_logging

from .config import PipelineConfig
from .service import PipelineService


def main() -> None:
    setup_logging(service="pipeline")
    config = PipelineConfig()
    service = PipelineService(config)
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
