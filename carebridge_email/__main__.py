"""Entry point for the email package.

Usage::

    python -m carebridge_email intake      # receipt API → raw-email zone + extraction topic
    python -m carebridge_email extractor   # extraction topic → parse → triggering zone
"""

from __future__ import annotations

import asyncio
import sys

from carebridge_framework import setup_logging


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ("intake", "extractor"):
        print("Usage: python -m carebridge_email <intake|extractor>", file=sys.stderr)
        sys.exit(1)

    mode = sys.argv[1]

    if mode == "intake":
        from .config import IntakeConfig
        from .intake import EmailIntakeAdapter

        setup_logging(service="email-intake")
        adapter = EmailIntakeAdapter(IntakeConfig())  # type: ignore[call-arg]
        asyncio.run(adapter.run())

    elif mode == "extractor":
        from .config import ExtractorConfig
        from .extraction import ExtractionWorker

        setup_logging(service="email-extractor")
        worker = ExtractionWorker(ExtractorConfig())
        asyncio.run(worker.run())


if __name__ == "__main__":
    main()
