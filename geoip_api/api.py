#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
HTTP interface.

Lookups read the live database from the registry injected into the
application; they never touch the network or the data directory.
"""

import logging
from contextlib import asynccontextmanager
from typing import Final

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from netaddr import INET_PTON, AddrFormatError, IPAddress

from geoip_api.config import VERSION
from geoip_api.database import DatabaseRegistry
from geoip_api.errors import AddressNotFound, DatabaseNotLoaded
from geoip_api.refresher import DatabaseRefresher
from geoip_api.schemas import DatabaseMetadata

logger = logging.getLogger(__name__)

SERVER_HEADER: Final[str] = f"geoip-api/{VERSION}"
BUILD_EPOCH_HEADER: Final[str] = "x-maxmind-build-epoch"


def parse_ip_address(value: str) -> str | None:
    """
    Parse and normalise an IPv4 or IPv6 address.

    Args:
        value: The address as given in the request path

    Returns:
        The address in canonical text form, or None if it is not a plain
        IPv4 or IPv6 address
    """
    try:
        return str(IPAddress(value, flags=INET_PTON))
    except (AddrFormatError, ValueError, TypeError):
        return None


def create_app(
    registry: DatabaseRegistry,
    refresher: DatabaseRefresher | None = None,
    cors_allowed_origins: list[str] | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        registry: Registry holding the live database
        refresher: Stopped together with the application, if given
        cors_allowed_origins: Origins allowed to call the API; "*" allows
            any origin and None disables CORS handling

    Returns:
        The configured application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if refresher is not None:
            refresher.stop()

    app = FastAPI(title="geoip-api", version=VERSION, lifespan=lifespan)

    if cors_allowed_origins is not None:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_allowed_origins,
            allow_methods=["GET"],
            expose_headers=["server", BUILD_EPOCH_HEADER],
            max_age=3600,
        )

    @app.middleware("http")
    async def add_server_header(request: Request, call_next):
        response = await call_next(request)
        response.headers["server"] = SERVER_HEADER
        return response

    @app.exception_handler(DatabaseNotLoaded)
    async def database_not_loaded(request: Request, exc: DatabaseNotLoaded):
        return JSONResponse({"detail": str(exc)}, status_code=503)

    @app.get("/metadata", response_model=DatabaseMetadata)
    def metadata() -> DatabaseMetadata:
        """Return the metadata of the live database."""
        with registry.current() as database:
            result = database.metadata()
        logger.debug("%r", result)
        return result

    @app.get("/{ip_address}")
    def lookup(ip_address: str) -> Response:
        """Return the record for an IP address, or 404 if there is none."""
        address = parse_ip_address(ip_address)
        if address is None:
            return Response(status_code=404)
        logger.debug("addr: %s", address)

        with registry.current() as database:
            try:
                record = database.lookup(address)
            except AddressNotFound:
                return Response(status_code=404)
            build_epoch = database.metadata().build_epoch

        return JSONResponse(record, headers={BUILD_EPOCH_HEADER: str(build_epoch)})

    return app
