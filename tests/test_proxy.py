"""Reverse proxy adapter tests against real localhost sockets."""
import asyncio

import pytest

from fleet.common.errors import TemplateValidationError
from fleet.common.models import LaunchTemplate
from fleet.common.utils import find_free_port
from fleet.worker.proxy import PortMapping, ReverseProxyAdapter


async def _echo(reader, writer):
    data = await reader.read()
    writer.write(data.upper())
    await writer.drain()
    writer.close()


async def _start_echo():
    server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


async def _round_trip(port: int, payload: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(payload)
    writer.write_eof()
    data = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    return data


class TestPortMapping:
    def test_from_template(self):
        template = LaunchTemplate(
            version=3,
            name="web",
            command=("app",),
            app_port=8080,
            listen_port=80,
            health_path="/health",
            env=(),
            created_at=0.0,
        )
        mapping = PortMapping.from_template(template, listen_port=18080)
        assert mapping.listen_port == 18080
        assert mapping.target_port == 8080
        assert mapping.template_version == 3

    def test_rejects_self_forwarding(self):
        with pytest.raises(TemplateValidationError):
            PortMapping(listen_port=9000, target_port=9000, template_version=1).validate()

    def test_rejects_out_of_range_port(self):
        with pytest.raises(TemplateValidationError):
            PortMapping(listen_port=70000, target_port=9000, template_version=1).validate()


class TestReverseProxyAdapter:
    @pytest.mark.asyncio
    async def test_forwards_bytes_unchanged(self):
        server, app_port = await _start_echo()
        listen_port = find_free_port(41000)
        adapter = ReverseProxyAdapter(
            PortMapping(listen_port=listen_port, target_port=app_port, template_version=1),
            listen_host="127.0.0.1",
        )
        await adapter.start()
        try:
            assert await _round_trip(listen_port, b"hello fleet") == b"HELLO FLEET"
            assert adapter.upstream_failures == 0
        finally:
            await adapter.stop()
            server.close()
            await server.wait_closed()
        assert not adapter.serving

    @pytest.mark.asyncio
    async def test_unreachable_application_closes_connection(self):
        app_port = find_free_port(42000)
        listen_port = find_free_port(app_port + 1)
        failures = []
        adapter = ReverseProxyAdapter(
            PortMapping(listen_port=listen_port, target_port=app_port, template_version=1),
            listen_host="127.0.0.1",
            on_upstream_failure=lambda mapping, exc: failures.append(mapping.target_port),
        )
        await adapter.start()
        try:
            assert await _round_trip(listen_port, b"ping") == b""
        finally:
            await adapter.stop()

        assert adapter.upstream_failures == 1
        assert adapter.last_upstream_error
        assert failures == [app_port]

