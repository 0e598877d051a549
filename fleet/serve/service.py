"""Ray Serve fleet control plane

Runs the registry, health checker, metrics collector, scaling controller and
traffic router in one Ray Serve replica (single actor). Admin routes manage
launch templates and capacity; every other path is forwarded to a routable
instance through its reverse proxy port.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import ray
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from ray import serve

from fleet.common.config import FleetSettings
from fleet.common.errors import RoutingUnavailable, UpstreamTimeout, UpstreamUnavailable
from fleet.serve.core import FleetControlCore, template_from_env

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


class PublishTemplateRequest(BaseModel):
    name: str
    command: List[str]
    app_port: int
    listen_port: int
    health_path: str = "/health"
    env: Dict[str, str] = {}
    make_default: bool = True


class CapacityRequest(BaseModel):
    desired: Optional[int] = None
    min_size: Optional[int] = None
    max_size: Optional[int] = None


def _filter_request_headers(headers: Dict) -> Dict:
    return {k: v for k, v in headers.items() if k.lower() not in ["host", "content-length"]}


def _filter_response_headers(headers: httpx.Headers) -> Dict:
    filtered = {}
    for k, v in headers.items():
        if k.lower() in ["content-length", "content-encoding", "transfer-encoding", "connection"]:
            continue
        filtered[k] = v
    return filtered


def _service_unavailable_response(reason: str, retry_after: int = 1) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={
            "error": {
                "message": "No instance can take the request right now, please retry later.",
                "type": "service_unavailable",
                "code": reason,
                "retry_after": retry_after,
            }
        },
        headers={"Retry-After": str(retry_after)},
    )


def _raise_for_result(result: Dict, status_code: int = 400) -> Dict:
    if result.get("status") == "error":
        raise HTTPException(status_code=status_code, detail=result.get("message"))
    return result


fastapi_app = FastAPI(title="Fleet Control Plane (Ray Serve)")
_MAX_ONGOING = int(os.getenv("SERVE_MAX_ONGOING_REQUESTS", "1000"))
_FORWARD_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@serve.deployment(max_ongoing_requests=_MAX_ONGOING)
@serve.ingress(fastapi_app)
class FleetControlServe(FleetControlCore):
    def __init__(self, initial_template: Optional[Dict] = None):
        super().__init__(
            settings=FleetSettings.from_env(),
            initial_template=initial_template,
        )
        self.start()

    @fastapi_app.get("/health")
    async def http_health(self):
        return await self.health()

    @fastapi_app.get("/admin/instances")
    async def admin_list_instances(self):
        return await self.list_instances()

    @fastapi_app.get("/admin/routable")
    async def admin_list_routable(self):
        return await self.list_routable()

    @fastapi_app.get("/admin/health")
    async def admin_health_records(self):
        return await self.health_records()

    @fastapi_app.get("/admin/decisions")
    async def admin_list_decisions(self, limit: Optional[int] = None):
        return await self.list_decisions(limit)

    @fastapi_app.get("/admin/templates")
    async def admin_list_templates(self):
        return await self.list_templates()

    @fastapi_app.post("/admin/templates")
    async def admin_publish_template(self, request: PublishTemplateRequest):
        return _raise_for_result(self.publish_template(request.dict()))

    @fastapi_app.post("/admin/templates/{version}/default")
    async def admin_set_default_template(self, version: int):
        return _raise_for_result(await self.set_default_template(version), status_code=404)

    @fastapi_app.post("/admin/capacity")
    async def admin_set_capacity(self, request: CapacityRequest):
        return _raise_for_result(
            await self.set_capacity(
                desired=request.desired,
                min_size=request.min_size,
                max_size=request.max_size,
            )
        )

    @fastapi_app.post("/admin/refresh")
    async def admin_start_refresh(self):
        return _raise_for_result(await self.start_refresh(), status_code=409)

    @fastapi_app.api_route("/{path:path}", methods=_FORWARD_METHODS)
    async def forward_request(self, path: str, request: Request):
        body = await request.body()
        headers = _filter_request_headers(dict(request.headers))
        try:
            instance, response = await self.forward(
                request.method,
                f"/{path}",
                headers=headers,
                content=body or None,
                params=dict(request.query_params),
            )
        except RoutingUnavailable as exc:
            logger.warning("Request to /%s rejected: %s", path, exc)
            return _service_unavailable_response(exc.reason, exc.retry_after)
        except UpstreamTimeout as exc:
            raise HTTPException(status_code=504, detail=str(exc))
        except UpstreamUnavailable as exc:
            logger.error("Error forwarding request: %s", exc)
            raise HTTPException(status_code=502, detail=f"Error forwarding request: {exc}")

        headers = _filter_response_headers(response.headers)
        headers["X-Fleet-Instance"] = instance.instance_id
        return Response(
            content=response.content,
            status_code=response.status_code,
            headers=headers,
        )


def _init_ray():
    if ray.is_initialized():
        return
    address = os.getenv("RAY_ADDRESS")
    working_dir = os.getenv("RAY_WORKING_DIR")
    if working_dir is None:
        working_dir = str(Path(__file__).resolve().parents[2])
    runtime_env = None
    if working_dir and working_dir.lower() != "none":
        runtime_env = {"working_dir": working_dir}

    if address:
        ray.init(address=address, runtime_env=runtime_env)
    else:
        ray.init(runtime_env=runtime_env)


def main():
    serve_host = os.getenv("SERVE_HOST", "0.0.0.0")
    serve_port = int(os.getenv("SERVE_PORT", "8000"))

    # fail before starting Ray on a bad configuration
    FleetSettings.from_env()

    _init_ray()

    try:
        serve.start(http_options={"host": serve_host, "port": serve_port})
    except Exception as exc:
        if "already" not in str(exc).lower():
            raise
        logger.info("Ray Serve already started: %s", exc)

    serve.run(
        FleetControlServe.bind(initial_template=template_from_env(os.environ)),
        name="fleet",
        route_prefix="/",
    )
    logger.info("Fleet control plane listening on %s:%s", serve_host, serve_port)


if __name__ == "__main__":
    main()
