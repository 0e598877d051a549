"""Reverse proxy adapter.

Listens on the router-facing port of one instance and forwards bytes,
unchanged, to the port the application actually binds. The mapping comes from
the launch template and is fixed for the life of the instance; a new
template version reaches the fleet through new instances. When the
application cannot be reached the client connection is closed at once and the
failure is counted, so health probes that go through this port fail instead
of hanging.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Set

from fleet.common.errors import TemplateValidationError
from fleet.common.models import LaunchTemplate

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024


@dataclass(frozen=True)
class PortMapping:
    listen_port: int
    target_port: int
    template_version: int
    target_host: str = "127.0.0.1"

    @classmethod
    def from_template(
        cls,
        template: LaunchTemplate,
        listen_port: Optional[int] = None,
        target_host: str = "127.0.0.1",
    ) -> "PortMapping":
        mapping = cls(
            listen_port=listen_port or template.listen_port,
            target_port=template.app_port,
            template_version=template.version,
            target_host=target_host,
        )
        mapping.validate()
        return mapping

    def validate(self) -> None:
        for name in ("listen_port", "target_port"):
            value = getattr(self, name)
            if not 1 <= value <= 65535:
                raise TemplateValidationError(f"{name} out of range: {value}")
        if self.listen_port == self.target_port and self.target_host in ("127.0.0.1", "localhost"):
            raise TemplateValidationError(f"proxy would forward port {self.listen_port} to itself")


UpstreamFailureCallback = Callable[[PortMapping, Exception], None]


class ReverseProxyAdapter:
    def __init__(
        self,
        mapping: PortMapping,
        listen_host: str = "0.0.0.0",
        connect_timeout: float = 3.0,
        on_upstream_failure: Optional[UpstreamFailureCallback] = None,
    ) -> None:
        mapping.validate()
        self.mapping = mapping
        self.listen_host = listen_host
        self.connect_timeout = connect_timeout
        self.on_upstream_failure = on_upstream_failure
        self.active_connections = 0
        self.upstream_failures = 0
        self.last_upstream_error: Optional[str] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._handlers: Set[asyncio.Task] = set()

    @property
    def serving(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(
            self._handle, self.listen_host, self.mapping.listen_port
        )
        logger.info(
            "Proxy listening on %s:%s -> %s:%s (template v%s)",
            self.listen_host,
            self.mapping.listen_port,
            self.mapping.target_host,
            self.mapping.target_port,
            self.mapping.template_version,
        )

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        for task in list(self._handlers):
            task.cancel()
        await asyncio.gather(*self._handlers, return_exceptions=True)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        try:
            await self.translate(reader, writer)
        finally:
            if task is not None:
                self._handlers.discard(task)

    async def translate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Forward one incoming connection to the application port"""
        mapping = self.mapping
        try:
            upstream_reader, upstream_writer = await asyncio.wait_for(
                asyncio.open_connection(mapping.target_host, mapping.target_port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            self.upstream_failures += 1
            self.last_upstream_error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "Proxy :%s cannot reach %s:%s: %s",
                mapping.listen_port,
                mapping.target_host,
                mapping.target_port,
                self.last_upstream_error,
            )
            if self.on_upstream_failure is not None:
                self.on_upstream_failure(mapping, exc)
            await _close(writer)
            return

        self.active_connections += 1
        try:
            await asyncio.gather(
                _pipe(reader, upstream_writer),
                _pipe(upstream_reader, writer),
            )
        finally:
            self.active_connections -= 1
            await _close(upstream_writer)
            await _close(writer)


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(_CHUNK)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
    except OSError as exc:
        logger.debug("Proxy stream closed: %s", exc)


async def _close(writer: asyncio.StreamWriter) -> None:
    try:
        writer.close()
        await writer.wait_closed()
    except OSError:
        pass
