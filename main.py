# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from comms_dispatch.api import create_app
from comms_dispatch.config_loader import load_from_config
from comms_dispatch.core import CommsDispatchCore
from comms_dispatch.settings import core_kwargs, load_settings

# Configure logging level from environment
log_level = os.getenv("COMMS_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_service(settings: dict[str, object]) -> CommsDispatchCore:
    """Instantiate the dispatcher with the providers and templates from config.ini."""
    providers, templates = load_from_config(str(settings["config_path"]))
    return CommsDispatchCore(providers=providers, templates=templates, **core_kwargs(settings))


async def run_service(settings: dict[str, object]) -> CommsDispatchCore:
    service = build_service(settings)
    await service.start()
    return service


if __name__ == "__main__":
    settings = load_settings()
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
