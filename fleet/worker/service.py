"""Host agent - launch/terminate primitive for one machine

Responsibilities:
1. Start application processes from launch template payloads
2. Put a reverse proxy adapter in front of each process
3. Stop processes (SIGTERM grace period, then SIGKILL)
4. Report per-instance CPU for the control plane's metrics collector
"""
import logging
import socket
from typing import Dict, List, Optional

import psutil
import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from fleet.common.config import AgentSettings
from fleet.worker.supervisor import InstanceSupervisor

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class StartInstanceRequest(BaseModel):
    template_version: int
    name: str
    command: List[str]
    app_port: int
    listen_port: int
    env: Dict[str, str] = {}


class AgentService:
    """Host agent service"""

    def __init__(
        self,
        agent_id: str,
        listen_host: str = "0.0.0.0",
        listen_port: int = 7000,
        advertise_host: Optional[str] = None,
        stop_grace_s: float = 10.0,
    ):
        self.agent_id = agent_id
        self.listen_host = listen_host
        self.listen_port = listen_port
        # address the control plane uses to reach proxied instances
        self.advertise_host = advertise_host or socket.gethostname()

        self.supervisor = InstanceSupervisor(agent_id, stop_grace_s=stop_grace_s)

        self.app = FastAPI(title=f"Host Agent - {agent_id}")
        self._setup_routes()

    def _setup_routes(self):
        """Register API routes"""

        @self.app.get("/health")
        async def health():
            return {
                "status": "ok",
                "agent_id": self.agent_id,
                "instances": len(self.supervisor.instances),
                "cpu_count": psutil.cpu_count(),
            }

        @self.app.post("/instances/start")
        async def start_instance(request: StartInstanceRequest):
            """Start one instance.

            Request body::

                {
                    "template_version": 3,
                    "name": "web",
                    "command": ["python", "-m", "http.server", "{port}"],
                    "app_port": 9000,
                    "listen_port": 8080,
                    "env": {"APP_ENV": "prod"}
                }
            """
            if not request.command:
                raise HTTPException(status_code=400, detail="command is required")
            try:
                instance = await self.supervisor.start_instance(
                    name=request.name,
                    template_version=request.template_version,
                    command=request.command,
                    app_port=request.app_port,
                    listen_port=request.listen_port,
                    env=request.env,
                )
            except Exception as e:
                logger.error(f"Failed to start instance: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            return {
                "status": "success",
                "instance": instance.to_dict(self.advertise_host),
            }

        @self.app.post("/instances/{instance_id}/stop")
        async def stop_instance(instance_id: str):
            success = await self.supervisor.stop_instance(instance_id)
            if success:
                return {"status": "success", "message": f"Instance {instance_id} stopped"}
            raise HTTPException(status_code=404, detail=f"Instance {instance_id} not found")

        @self.app.get("/instances")
        async def list_instances():
            return {
                "instances": {
                    instance_id: instance.to_dict(self.advertise_host)
                    for instance_id, instance in self.supervisor.list_instances().items()
                }
            }

        @self.app.get("/instances/{instance_id}/status")
        async def get_instance_status(instance_id: str):
            instance = self.supervisor.get_instance(instance_id)
            if not instance:
                raise HTTPException(status_code=404, detail=f"Instance {instance_id} not found")
            status = instance.refresh_status()
            return {
                "instance_id": instance_id,
                "status": status,
                "running": status == "running",
                "template_version": instance.template_version,
                "listen_port": instance.listen_port,
                "app_port": instance.app_port,
            }

        @self.app.get("/instances/{instance_id}/metrics")
        async def get_instance_metrics(instance_id: str):
            """CPU of the application process as a fraction of the host"""
            instance = self.supervisor.get_instance(instance_id)
            if not instance:
                raise HTTPException(status_code=404, detail=f"Instance {instance_id} not found")
            if instance.refresh_status() != "running":
                raise HTTPException(status_code=409, detail=f"Instance {instance_id} is not running")
            try:
                cpu = instance.cpu_fraction()
            except psutil.Error as e:
                raise HTTPException(status_code=409, detail=f"Process unavailable: {e}")
            return {
                "instance_id": instance_id,
                "cpu": cpu,
                "active_connections": instance.adapter.active_connections,
            }

    async def cleanup(self):
        logger.info("Cleaning up agent instances...")
        await self.supervisor.cleanup()

    def run(self):
        """Run the agent service"""
        @self.app.on_event("startup")
        async def on_startup():
            logger.info(f"Host agent started: {self.agent_id}")

        @self.app.on_event("shutdown")
        async def on_shutdown():
            await self.cleanup()
            logger.info(f"Host agent shut down: {self.agent_id}")

        logger.info(f"Starting host agent: {self.agent_id}")
        logger.info(f"Listening on {self.listen_host}:{self.listen_port}")

        uvicorn.run(
            self.app,
            host=self.listen_host,
            port=self.listen_port,
            log_level="info"
        )


def main():
    settings = AgentSettings.from_env()
    service = AgentService(
        agent_id=settings.agent_id,
        listen_host=settings.listen_host,
        listen_port=settings.listen_port,
        advertise_host=settings.advertise_host,
        stop_grace_s=settings.stop_grace_s,
    )

    # cleanup runs from the FastAPI shutdown hook
    try:
        service.run()
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt, shutting down...")
    except Exception as e:
        logger.error(f"Error running agent: {e}")
        raise
    finally:
        logger.info("Host agent stopped")


if __name__ == "__main__":
    main()
