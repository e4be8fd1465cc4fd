from __future__ import annotations

import importlib
import logging

from aiohttp import web
from dotenv import load_dotenv

from .app import GroupGuardApp
from .config import load_settings
from .interfaces import ConnectionProvider
from .logging_setup import setup_logging

log = logging.getLogger("groupguard.main")


def load_provider(spec: str) -> ConnectionProvider:
    """Build the connection provider named by ``module:callable``."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise SystemExit("PROVIDER_FACTORY must look like 'package.module:callable'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    return factory()


def main() -> None:
    load_dotenv()
    settings = load_settings()
    setup_logging(settings.log_level)

    if not settings.provider_factory:
        raise SystemExit("PROVIDER_FACTORY is not set")
    provider = load_provider(settings.provider_factory)

    guard = GroupGuardApp(settings, provider)
    log.info("Listening on %s:%s", settings.host, settings.port)
    web.run_app(guard.build_web_app(), host=settings.host, port=settings.port, print=None)


if __name__ == "__main__":
    main()
