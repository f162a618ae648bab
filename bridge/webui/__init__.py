from __future__ import annotations

from functools import lru_cache
from typing import Any

from jinja2 import Environment, PackageLoader, select_autoescape

__all__ = [
    "render_template",
]


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=PackageLoader("bridge.webui", "templates"),
        autoescape=select_autoescape(["html", "xml"]),
    )


def render_template(name: str, **context: Any) -> str:
    template = _environment().get_template(name)
    return template.render(**context)
