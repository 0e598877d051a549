"""Client side of the launch/terminate primitive.

Host agents (``fleet.worker.service``) start and stop application processes.
Both calls are fallible; terminate is idempotent by id.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import httpx

from fleet.common.errors import ProvisioningFailure
from fleet.common.models import Endpoint, LaunchedInstance, LaunchTemplate

logger = logging.getLogger(__name__)


class Provisioner(ABC):
    @abstractmethod
    async def launch(self, template: LaunchTemplate) -> LaunchedInstance:
        """Start one instance from ``template``"""

    @abstractmethod
    async def terminate(self, provider_id: str, control_url: Optional[str] = None) -> None:
        """Stop an instance; an id the host no longer knows counts as stopped"""


class AgentProvisioner(Provisioner):
    def __init__(
        self,
        agent_urls: List[str],
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.agent_urls = [url.rstrip("/") for url in agent_urls]
        self.timeout = timeout
        self._transport = transport
        self._placements: Dict[str, str] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _select_agent(self) -> str:
        if not self.agent_urls:
            raise ProvisioningFailure("launch", "no host agents configured")
        load = {url: 0 for url in self.agent_urls}
        for url in self._placements.values():
            if url in load:
                load[url] += 1
        # fewest placed instances first, configuration order breaks ties
        return min(self.agent_urls, key=lambda url: load[url])

    async def launch(self, template: LaunchTemplate) -> LaunchedInstance:
        agent_url = self._select_agent()
        payload = {
            "template_version": template.version,
            "name": template.name,
            "command": list(template.command),
            "app_port": template.app_port,
            "listen_port": template.listen_port,
            "env": dict(template.env),
        }
        try:
            async with self._client() as client:
                response = await client.post(f"{agent_url}/instances/start", json=payload)
                response.raise_for_status()
                info = response.json().get("instance") or {}
        except httpx.HTTPStatusError as exc:
            raise ProvisioningFailure(
                "launch", f"status {exc.response.status_code}: {exc.response.text}", agent_url
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ProvisioningFailure("launch", f"{type(exc).__name__}: {exc}", agent_url) from exc

        try:
            launched = LaunchedInstance(
                provider_id=str(info["instance_id"]),
                endpoint=Endpoint(
                    host=str(info["host"]),
                    port=int(info["listen_port"]),
                    app_port=int(info["app_port"]),
                ),
                control_url=agent_url,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProvisioningFailure("launch", f"malformed agent response: {info!r}", agent_url) from exc
        self._placements[launched.provider_id] = agent_url
        logger.info(
            "Launched %s on %s (listen %s -> app %s)",
            launched.provider_id,
            agent_url,
            launched.endpoint.port,
            launched.endpoint.app_port,
        )
        return launched

    async def terminate(self, provider_id: str, control_url: Optional[str] = None) -> None:
        agent_url = control_url or self._placements.get(provider_id)
        if not agent_url:
            raise ProvisioningFailure("terminate", "unknown owning agent", provider_id)
        try:
            async with self._client() as client:
                response = await client.post(f"{agent_url}/instances/{provider_id}/stop")
        except httpx.HTTPError as exc:
            raise ProvisioningFailure("terminate", f"{type(exc).__name__}: {exc}", provider_id) from exc
        if response.status_code == 404:
            logger.info("Terminate %s: already gone on %s", provider_id, agent_url)
        elif response.status_code >= 400:
            raise ProvisioningFailure("terminate", f"status {response.status_code}", provider_id)
        self._placements.pop(provider_id, None)
