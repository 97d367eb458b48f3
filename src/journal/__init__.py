"""
Journal package.

Keep imports lightweight so pure modules like `src.journal.segmenter` can be
used without loading the provider clients at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.journal.config import Config
    from src.journal.gateway import SessionGateway

__all__ = ["Config", "get_config", "SessionGateway", "build_gateway"]


def __getattr__(name: str) -> Any:
    if name in ("Config", "get_config"):
        from src.journal.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    if name in ("SessionGateway", "build_gateway"):
        from src.journal.gateway import SessionGateway, build_gateway

        return {"SessionGateway": SessionGateway, "build_gateway": build_gateway}[name]
    raise AttributeError(name)
