"""cirelay application entry point."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import logging.handlers
import os
import signal
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from cirelay import __version__
from cirelay.config import AppConfig, load_config
from cirelay.engine.dispatcher import ActionDispatcher
from cirelay.engine.orchestrator import BuildOrchestrator
from cirelay.errors import ConfigurationError, ConsumerFatalError
from cirelay.ingest.kafka import ActionConsumer
from cirelay.ingest.monitor import BuildMonitor
from cirelay.middleware import setup_middleware
from cirelay.providers.registry import build_registry
from cirelay.sink import create_sink
from cirelay.utils.retry import RetryPolicy

load_dotenv()

logger = logging.getLogger("cirelay")

CONFIG_ENV = "CIRELAY_CONFIG"
DEFAULT_CONFIG = "cirelay.yaml"


def _setup_logging(config: AppConfig) -> None:
    log_dir = Path(config.logging.dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.handlers.RotatingFileHandler(
                log_dir / "cirelay.log", maxBytes=10_000_000, backupCount=5
            ),
        ],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """App lifespan: build the provider registry and the build monitor."""
    config = app.state.config
    _setup_logging(config)
    logger.info("Starting cirelay webhook server...")

    registry = build_registry(config)
    for provider in registry.providers():
        await provider.initialize()
        logger.info("Registered webhook route: POST %s", provider.webhook_path)
    app.state.registry = registry
    app.state.monitor = BuildMonitor(RetryPolicy.from_config(config.http_retry))
    app.state.started_at = time.monotonic()
    logger.info("Waiting for webhooks on port %s", config.server.port)

    yield

    logger.info("Shutting down webhook server (active monitors: %d)", len(app.state.monitor))
    await app.state.monitor.shutdown()
    await registry.cleanup()
    logger.info("cirelay shutdown complete")


def create_app(config_path: str | None = None) -> FastAPI:
    config = load_config(config_path or os.environ.get(CONFIG_ENV, DEFAULT_CONFIG))

    app = FastAPI(title="cirelay", version=__version__, lifespan=lifespan)
    app.state.config = config

    from cirelay.api.webhooks import router as webhooks_router

    app.include_router(webhooks_router)
    setup_middleware(app)
    return app


async def run_consumer(config: AppConfig) -> int:
    """Run the Kafka consumer until a signal arrives; returns the exit code."""
    registry = build_registry(config)
    sink = create_sink(config)
    orchestrator = BuildOrchestrator(registry, sink, config.orchestrator)
    consumer = ActionConsumer(config.kafka, ActionDispatcher(orchestrator, sink))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, consumer.stop)

    try:
        for provider in registry.providers():
            await provider.initialize()
        await consumer.run()
    except (ConsumerFatalError, ConfigurationError) as exc:
        logger.error("Consumer stopped: %s", exc)
        return 1
    finally:
        await sink.close()
        await registry.cleanup()
    return 0


def _serve(args: argparse.Namespace, config: AppConfig) -> int:
    # The factory reloads the file itself, possibly in a reloader subprocess.
    os.environ[CONFIG_ENV] = args.config
    uvicorn.run(
        "cirelay.main:create_app",
        factory=True,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        reload=args.reload,
    )
    return 0


def _consume(args: argparse.Namespace, config: AppConfig) -> int:
    _setup_logging(config)
    return asyncio.run(run_consumer(config))


def _list_providers(args: argparse.Namespace, config: AppConfig) -> int:
    logging.basicConfig(level=logging.WARNING)
    registry = build_registry(config)
    routes = sorted(registry.webhook_routes(), key=lambda route: route[1].name)
    if not routes:
        print("No providers registered")
    for path, provider in routes:
        print(f"{provider.name:<12} POST {path}")
    asyncio.run(registry.cleanup())
    return 0


def cli():
    parser = argparse.ArgumentParser(prog="cirelay", description="Relay action runs to CI providers")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Start the webhook server")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.set_defaults(handler=_serve)

    consume_parser = sub.add_parser("consume", help="Consume action events from Kafka")
    consume_parser.set_defaults(handler=_consume)

    providers_parser = sub.add_parser("providers", help="List providers that register from config")
    providers_parser.set_defaults(handler=_list_providers)

    for command_parser in (serve_parser, consume_parser, providers_parser):
        command_parser.add_argument("--config", default=DEFAULT_CONFIG, help="Path to cirelay.yaml")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        parser.exit(2, f"cirelay: {exc}\n")
    sys.exit(args.handler(args, config))


if __name__ == "__main__":
    cli()
