#!/usr/bin/env python3
"""
ESCUDEIRO: Filesystem Gateway Web Server

Exposes a content root as browsable directory listings, serves its files
statically, runs PHP scripts found in it through a PHP interpreter and
forwards the /api/ prefix to an optional upstream backend.
"""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import quote

import httpx
import uvicorn
import yaml
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import BaseModel, Field, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from content_resolver import (
    API_PREFIX,
    FILES_PREFIX,
    TargetKind,
    classify,
    is_php_file,
    list_directory,
    resolve_target,
)
from errors import ConfigurationError, DirectoryReadError, GatewayError
from listing_renderer import directory_classifier, render_listing
from php_adapter import PHP_MODES, PHPAdapter, PersistentInterpreter
from reverse_proxy import ReverseProxy, parse_upstream_origin
from static_content import serve_static_file
from worker_pool import WorkerConfig, WorkerPool

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ============================================================================
# Configuration Models
# ============================================================================

class ServerConfig(BaseModel):
    """Server configuration"""
    host: str = "0.0.0.0"
    port: int = 8080
    keep_alive_timeout: int = 60  # seconds
    shutdown_grace_period: int = 30  # seconds
    workers: int = 16


class ContentConfig(BaseModel):
    """Content root configuration"""
    root: str = ""


class PHPConfig(BaseModel):
    """PHP interpreter configuration"""
    binary: str = "php"
    mode: str = "persistent"  # persistent, oneshot
    host: str = "127.0.0.1"
    port: int = 8090
    execution_timeout: Optional[float] = 30.0
    startup_timeout: float = 5.0


class ProxyConfig(BaseModel):
    """Reverse proxy configuration"""
    upstream: Optional[str] = None
    timeout: float = 30.0


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None


class AppConfig(BaseModel):
    """Application configuration"""
    server: ServerConfig = Field(default_factory=ServerConfig)
    content: ContentConfig = Field(default_factory=ContentConfig)
    php: PHPConfig = Field(default_factory=PHPConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config_from_file(config_file: str) -> AppConfig:
    """Load configuration from YAML file"""
    try:
        with open(config_file, 'r') as f:
            config_dict = yaml.safe_load(f) or {}
        return AppConfig(**config_dict)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read configuration file {config_file}: {e}")
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_file}: {e}")


def validate_config(config: AppConfig) -> AppConfig:
    """
    Check the configuration before serving.

    The content root must be an existing directory and the upstream origin,
    when given, must be an absolute http(s) URL. Raises ConfigurationError.
    """
    if not config.content.root:
        raise ConfigurationError("Content root is not set (use --root or WEB_ROOT)")

    root = os.path.abspath(config.content.root)
    if not os.path.isdir(root):
        raise ConfigurationError(f"Content root {root} does not exist or is not a directory")
    config.content.root = root

    if config.proxy.upstream:
        try:
            parse_upstream_origin(config.proxy.upstream)
        except ValueError as e:
            raise ConfigurationError(str(e))
    else:
        config.proxy.upstream = None

    if config.php.mode not in PHP_MODES:
        raise ConfigurationError(f"Unknown PHP mode {config.php.mode!r}; expected one of {', '.join(PHP_MODES)}")

    if config.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        raise ConfigurationError(f"Unknown log level {config.logging.level!r}")

    return config


def configure_logging(settings: LoggingConfig):
    """Apply level and optional log file"""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.level.upper()))
    if settings.file:
        handler = logging.FileHandler(settings.file)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        root_logger.addHandler(handler)


# ============================================================================
# FastAPI Application
# ============================================================================

def require_get(request: Request):
    """Browsing and file endpoints only accept GET"""
    if request.method != "GET":
        logger.warning(f"Method not allowed: {request.method} {request.url.path}")
        raise HTTPException(status_code=405, detail="Method Not Allowed", headers={"Allow": "GET"})


def redirect_to(path: str, request: Request) -> RedirectResponse:
    url = quote(path)
    if request.url.query:
        url += "?" + request.url.query
    return RedirectResponse(url=url, status_code=301)


def create_app(config: AppConfig, proxy_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    """
    Build the gateway application for a validated configuration.

    Args:
        config: Configuration already passed through validate_config
        proxy_client: httpx client for the upstream; created lazily otherwise
    """
    content_root = config.content.root

    worker_pool = WorkerPool(WorkerConfig(max_workers=config.server.workers))

    interpreter = None
    if config.php.mode == "persistent":
        interpreter = PersistentInterpreter(
            binary=config.php.binary,
            document_root=content_root,
            host=config.php.host,
            port=config.php.port,
            startup_timeout=config.php.startup_timeout,
            request_timeout=config.php.execution_timeout
        )
    php = PHPAdapter(
        binary=config.php.binary,
        content_root=content_root,
        worker_pool=worker_pool,
        interpreter=interpreter,
        execution_timeout=config.php.execution_timeout
    )

    proxy = None
    if config.proxy.upstream:
        proxy = ReverseProxy(config.proxy.upstream, client=proxy_client, timeout=config.proxy.timeout)
    else:
        logger.warning("No upstream configured; the /api/ proxy is disabled")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - startup and shutdown"""
        await worker_pool.start()
        yield
        await php.shutdown()
        if proxy is not None:
            await proxy.aclose()
        await worker_pool.shutdown(wait=True)
        logger.info(f"Worker pool metrics at shutdown: {worker_pool.get_metrics()}")

    app = FastAPI(
        title="ESCUDEIRO - Filesystem Gateway",
        description="Directory browsing, static files, PHP execution and an API reverse proxy",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None
    )
    app.state.config = config
    app.state.worker_pool = worker_pool
    app.state.php = php
    app.state.proxy = proxy

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        logger.error(
            f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}"
            + (f" ({exc.path})" if exc.path else "")
        )
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=exc.headers)

    # ------------------------------------------------------------------
    # Routes, most specific prefix first. No method list: any method,
    # extension methods included, reaches a handler.
    # ------------------------------------------------------------------

    async def forward_api(request: Request):
        """Relay the reserved API prefix to the upstream"""
        if proxy is None:
            raise HTTPException(status_code=404, detail="Not Found")
        return await proxy.forward(request)

    async def files_index(request: Request):
        require_get(request)
        return redirect_to(FILES_PREFIX, request)

    async def serve_file(request: Request) -> Response:
        """Serve a file statically or through PHP"""
        require_get(request)
        request_path = request.scope["path"]
        target = await resolve_target(content_root, request_path, FILES_PREFIX)
        logger.info(f"Serving request for: {target.absolute_path}")

        if target.kind is TargetKind.MISSING:
            logger.warning(f"File or directory not found: {target.absolute_path}")
            raise HTTPException(status_code=404, detail="Not Found")

        if target.is_directory:
            if not request_path.endswith("/"):
                return redirect_to(request_path + "/", request)

            index_html = os.path.join(target.absolute_path, "index.html")
            if await classify(index_html) is TargetKind.REGULAR_FILE:
                logger.info(f"Serving index.html: {index_html}")
                return await serve_static_file(request, index_html)

            index_php = os.path.join(target.absolute_path, "index.php")
            if await classify(index_php) is TargetKind.REGULAR_FILE:
                logger.info(f"Serving index.php: {index_php}")
                return await php.execute(request, index_php)

            # No index page; browse it instead
            return redirect_to("/" + target.relative_path, request)

        if is_php_file(target.absolute_path):
            return await php.execute(request, target.absolute_path)

        return await serve_static_file(request, target.absolute_path)

    async def browse_directory(request: Request):
        """Render the listing of a directory under the content root"""
        require_get(request)
        request_path = request.scope["path"]
        target = await resolve_target(content_root, request_path, "/")
        logger.info(f"Listing directory: {target.absolute_path}")

        if target.kind is TargetKind.MISSING:
            raise DirectoryReadError("Failed to list directory", path=target.absolute_path)

        if target.is_file:
            return redirect_to(FILES_PREFIX + target.relative_path, request)

        if target.relative_path and not request_path.endswith("/"):
            return redirect_to(request_path + "/", request)

        listing = await list_directory(target)
        result = await worker_pool.submit_task(
            f"render:{target.absolute_path}",
            render_listing,
            listing,
            directory_classifier(target.absolute_path)
        )
        if not result.success:
            raise GatewayError(f"Failed to render directory listing: {result.error}", path=target.absolute_path)

        logger.info(f"Directory rendered: {target.absolute_path} ({len(listing.entries)} entries)")
        return HTMLResponse(content=result.result)

    app.add_route(API_PREFIX + "{api_path:path}", forward_api)
    app.add_route("/files", files_index)
    app.add_route(FILES_PREFIX + "{file_path:path}", serve_file)
    app.add_route("/{browse_path:path}", browse_directory)

    return app


# ============================================================================
# CLI and Main
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ESCUDEIRO - Filesystem Gateway Web Server"
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file (YAML)"
    )
    parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("SERVER_PORT") or 8080),
        help="Port to bind to (default: $SERVER_PORT or 8080)"
    )
    parser.add_argument(
        "--root",
        type=str,
        default=os.environ.get("WEB_ROOT", ""),
        help="Content root directory (default: $WEB_ROOT)"
    )
    parser.add_argument(
        "--upstream",
        type=str,
        default=os.environ.get("PROXY_TARGET") or None,
        help="Upstream origin for /api/ (default: $PROXY_TARGET, disabled if unset)"
    )
    parser.add_argument(
        "--php-binary",
        type=str,
        default="php",
        help="PHP interpreter executable (default: php)"
    )
    parser.add_argument(
        "--php-mode",
        type=str,
        default="persistent",
        choices=list(PHP_MODES),
        help="PHP execution mode (default: persistent)"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=16,
        help="Number of worker threads (default: 16)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )
    return parser


def config_from_args(args: argparse.Namespace) -> AppConfig:
    """Configuration from a YAML file if given, command line otherwise"""
    if args.config:
        return load_config_from_file(args.config)

    config = AppConfig()
    config.server.host = args.host
    config.server.port = args.port
    config.server.workers = args.workers
    config.content.root = args.root
    config.proxy.upstream = args.upstream
    config.php.binary = args.php_binary
    config.php.mode = args.php_mode
    config.logging.level = args.log_level
    return config


def main(argv: Optional[list] = None):
    """Main entry point"""
    # A .env file in the working directory supplies WEB_ROOT, SERVER_PORT
    # and PROXY_TARGET; variables already set in the environment win
    load_dotenv(".env")
    args = build_parser().parse_args(argv)

    try:
        config = validate_config(config_from_args(args))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        sys.exit(1)

    configure_logging(config.logging)
    app = create_app(config)

    logger.info("=" * 60)
    logger.info("ESCUDEIRO - Filesystem Gateway")
    logger.info("=" * 60)
    logger.info(f"Host: {config.server.host}")
    logger.info(f"Port: {config.server.port}")
    logger.info(f"Content Root: {config.content.root}")
    logger.info(f"PHP: {config.php.binary} ({config.php.mode} mode)")
    if config.php.mode == "persistent":
        logger.info(f"PHP Server Address: {config.php.host}:{config.php.port}")
    logger.info(f"API Upstream: {config.proxy.upstream or 'Disabled'}")
    logger.info(f"Workers: {config.server.workers}")
    logger.info("=" * 60)
    logger.info(f"Server running at http://{config.server.host}:{config.server.port}")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 60)

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
        timeout_keep_alive=config.server.keep_alive_timeout,
        timeout_graceful_shutdown=config.server.shutdown_grace_period
    )
    logger.info("Server stopped")


if __name__ == "__main__":
    main()
