#!/usr/bin/env python3
"""Entry point for running the StudyPals signaling relay locally."""

import uvicorn

from studypals_calls.main import app
from studypals_calls.settings import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        app,
        host=settings.relay_host,
        port=settings.relay_port,
        log_level="info",
    )
