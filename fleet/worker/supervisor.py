"""Application process supervision on one host.

Each instance is an application process started from a launch template plus
the reverse proxy adapter in front of it.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import psutil

from fleet.common.models import LaunchTemplate
from fleet.common.utils import check_port_in_use, find_free_port
from fleet.worker.proxy import PortMapping, ReverseProxyAdapter

logger = logging.getLogger(__name__)


@dataclass
class ManagedInstance:
    instance_id: str
    name: str
    template_version: int
    command: List[str]
    app_port: int
    listen_port: int
    process: asyncio.subprocess.Process
    adapter: ReverseProxyAdapter
    started_at: float = field(default_factory=time.time)
    status: str = "running"
    _ps: Optional[psutil.Process] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def refresh_status(self) -> str:
        if self.status == "running" and self.process.returncode is not None:
            self.status = "exited"
            logger.warning(
                "Instance %s exited with code %s", self.instance_id, self.process.returncode
            )
        return self.status

    def cpu_fraction(self) -> float:
        """CPU used since the previous call, as a fraction of the whole host"""
        if self._ps is None:
            self._ps = psutil.Process(self.pid)
        percent = self._ps.cpu_percent(interval=None)
        return min(1.0, percent / (100.0 * (psutil.cpu_count() or 1)))

    def to_dict(self, host: str) -> Dict:
        return {
            "instance_id": self.instance_id,
            "name": self.name,
            "template_version": self.template_version,
            "command": self.command,
            "host": host,
            "app_port": self.app_port,
            "listen_port": self.listen_port,
            "pid": self.pid,
            "status": self.refresh_status(),
            "started_at": self.started_at,
            "proxy": {
                "active_connections": self.adapter.active_connections,
                "upstream_failures": self.adapter.upstream_failures,
                "last_upstream_error": self.adapter.last_upstream_error,
            },
        }


class InstanceSupervisor:
    def __init__(self, agent_id: str, stop_grace_s: float = 10.0) -> None:
        self.agent_id = agent_id
        self.stop_grace_s = stop_grace_s
        self.instances: Dict[str, ManagedInstance] = {}
        self._lock = asyncio.Lock()

    def get_instance(self, instance_id: str) -> Optional[ManagedInstance]:
        return self.instances.get(instance_id)

    def list_instances(self) -> Dict[str, ManagedInstance]:
        return dict(self.instances)

    def _claimed_ports(self) -> set:
        ports = set()
        for inst in self.instances.values():
            ports.update((inst.app_port, inst.listen_port))
        return ports

    def _pick_port(self, wanted: int, taken: set) -> int:
        if wanted not in taken and not check_port_in_use(wanted):
            return wanted
        port = wanted + 1
        while True:
            port = find_free_port(port)
            if port is None:
                raise RuntimeError(f"no free port near {wanted}")
            if port not in taken:
                return port
            port += 1

    async def start_instance(
        self,
        name: str,
        template_version: int,
        command: List[str],
        app_port: int,
        listen_port: int,
        env: Optional[Dict[str, str]] = None,
    ) -> ManagedInstance:
        async with self._lock:
            taken = self._claimed_ports()
            # several instances may share one host; move off ports already in use
            app_port = self._pick_port(app_port, taken)
            taken.add(app_port)
            listen_port = self._pick_port(listen_port, taken)

            instance_id = f"{self.agent_id}-{uuid.uuid4().hex[:8]}"
            template = LaunchTemplate(
                version=template_version,
                name=name,
                command=tuple(command),
                app_port=app_port,
                listen_port=listen_port,
                env=tuple(sorted((env or {}).items())),
            )
            mapping = PortMapping.from_template(template)
            argv = [part.replace("{port}", str(app_port)) for part in command]
            process_env = dict(os.environ)
            process_env.update(env or {})
            process_env["PORT"] = str(app_port)

            process = await asyncio.create_subprocess_exec(*argv, env=process_env)
            adapter = ReverseProxyAdapter(
                mapping,
                on_upstream_failure=lambda _mapping, exc: self._on_upstream_failure(instance_id, exc),
            )
            try:
                await adapter.start()
            except OSError:
                await self._terminate_process(process)
                raise

            instance = ManagedInstance(
                instance_id=instance_id,
                name=name,
                template_version=template_version,
                command=argv,
                app_port=app_port,
                listen_port=listen_port,
                process=process,
                adapter=adapter,
            )
            self.instances[instance.instance_id] = instance
            logger.info(
                "Started %s (pid %s) template v%s: proxy :%s -> app :%s",
                instance.instance_id,
                process.pid,
                template_version,
                listen_port,
                app_port,
            )
            return instance

    def _on_upstream_failure(self, instance_id: str, exc: Exception) -> None:
        """The proxy could not reach the application; a dead process shows as exited at once"""
        instance = self.instances.get(instance_id)
        if instance is not None:
            instance.refresh_status()

    async def stop_instance(self, instance_id: str) -> bool:
        async with self._lock:
            instance = self.instances.pop(instance_id, None)
        if instance is None:
            return False
        await instance.adapter.stop()
        await self._terminate_process(instance.process)
        instance.status = "stopped"
        logger.info("Stopped %s", instance_id)
        return True

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.stop_grace_s)
        except asyncio.TimeoutError:
            logger.warning("pid %s ignored SIGTERM for %.0fs, killing", process.pid, self.stop_grace_s)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def cleanup(self) -> None:
        for instance_id in list(self.instances):
            try:
                await self.stop_instance(instance_id)
            except Exception as e:
                logger.error(f"Error stopping instance {instance_id}: {e}")
