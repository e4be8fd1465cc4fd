from __future__ import annotations

import logging

FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    resolved = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=resolved, format=FORMAT)
    # aiohttp access logs are noisy at INFO
    logging.getLogger("aiohttp.access").setLevel(max(resolved, logging.WARNING))
    logging.getLogger("groupguard").setLevel(resolved)
