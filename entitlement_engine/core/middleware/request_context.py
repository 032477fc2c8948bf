import logging
import re
import time
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from entitlement_engine.core.logging import latency_bucket_ms, request_id_ctx_var, tenant_id_ctx_var

logger = logging.getLogger("entitlements.http")

# /v1/tenants/{tenant_id}/... and /v1/admin/tenants/{tenant_id}/...
_TENANT_PATH = re.compile(r"^/v1/(?:admin/)?tenants/([^/]+)")


def tenant_from_path(path: str) -> Optional[str]:
    match = _TENANT_PATH.match(path)
    return match.group(1) if match else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind request_id and tenant_id for the request and log its completion."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        tenant_id = tenant_from_path(request.url.path)
        request.state.request_id = rid
        rid_token = request_id_ctx_var.set(rid)
        tenant_token = tenant_id_ctx_var.set(tenant_id)

        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            route = request.scope.get("route")
            logger.info(
                "request.complete",
                extra={
                    "path": request.url.path,
                    "route": getattr(route, "path", None),
                    "method": request.method,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
                },
            )
            return response
        finally:
            tenant_id_ctx_var.reset(tenant_token)
            request_id_ctx_var.reset(rid_token)
