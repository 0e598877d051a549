"""Versioned launch templates.

A template is validated once, when it is published. Running instances are
never changed in place; a new version only affects future launches.
"""
from __future__ import annotations

import logging
import time
from typing import Dict, List, Mapping, Optional, Sequence

from fleet.common.errors import TemplateNotFound, TemplateValidationError
from fleet.common.models import LaunchTemplate

logger = logging.getLogger(__name__)


def _check_port(name: str, value: int) -> None:
    if not isinstance(value, int) or not 1 <= value <= 65535:
        raise TemplateValidationError(f"{name} must be a TCP port, got {value!r}")


def validate_template(
    name: str,
    command: Sequence[str],
    app_port: int,
    listen_port: int,
    health_path: str,
) -> None:
    if not name:
        raise TemplateValidationError("name is required")
    if not command or not all(isinstance(part, str) and part for part in command):
        raise TemplateValidationError("command must be a non-empty argv list")
    _check_port("app_port", app_port)
    _check_port("listen_port", listen_port)
    # the proxy binds listen_port on the same host the application binds app_port
    if app_port == listen_port:
        raise TemplateValidationError(
            f"listen_port and app_port are both {app_port}; the proxy mapping needs distinct ports"
        )
    if not health_path.startswith("/"):
        raise TemplateValidationError(f"health_path must start with '/', got {health_path!r}")


class TemplateCatalog:
    def __init__(self) -> None:
        self._templates: Dict[int, LaunchTemplate] = {}
        self._default_version: Optional[int] = None

    def publish(
        self,
        name: str,
        command: Sequence[str],
        app_port: int,
        listen_port: int,
        health_path: str = "/health",
        env: Optional[Mapping[str, str]] = None,
        make_default: bool = True,
    ) -> LaunchTemplate:
        validate_template(name, command, app_port, listen_port, health_path)
        version = max(self._templates, default=0) + 1
        template = LaunchTemplate(
            version=version,
            name=name,
            command=tuple(command),
            app_port=app_port,
            listen_port=listen_port,
            health_path=health_path,
            env=tuple(sorted((env or {}).items())),
            created_at=time.time(),
        )
        self._templates[version] = template
        if make_default or self._default_version is None:
            self._default_version = version
        logger.info(
            "Published launch template %s v%s (listen %s -> app %s)%s",
            name,
            version,
            listen_port,
            app_port,
            " [default]" if self._default_version == version else "",
        )
        return template

    def get(self, version: int) -> LaunchTemplate:
        template = self._templates.get(version)
        if template is None:
            raise TemplateNotFound(version)
        return template

    def set_default(self, version: int) -> LaunchTemplate:
        template = self.get(version)
        self._default_version = version
        logger.info("Launch template v%s is now the default", version)
        return template

    def current(self) -> Optional[LaunchTemplate]:
        if self._default_version is None:
            return None
        return self._templates[self._default_version]

    def list(self) -> List[LaunchTemplate]:
        return [self._templates[v] for v in sorted(self._templates)]
