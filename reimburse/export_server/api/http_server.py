"""
HTTP API for the export server.

Endpoints:
    GET  /v1/health                         liveness and active job count
    GET  /v1/records?status=unclaimed       list records
    POST /v1/exports/claim                  export all unclaimed records
    POST /v1/records/{record_id}/export     export one record
    POST /v1/exports/selection              export chosen records, claiming optional
    GET  /v1/exports                        active and recently finished jobs
    GET  /v1/exports/{job_id}               job status
    GET  /v1/exports/{job_id}/archive       archive awaiting a user decision
    POST /v1/exports/{job_id}/outcome       report delivered/cancelled/failed

The last two endpoints only apply to the in-memory channel in pending
mode, where a person downloads the archive, sends or shares it, and then
reports back how that went.

Invariants:
    - Triggers return immediately; jobs run in the background
    - 409 means the scope already has a job in flight
    - 204 means there was nothing to export
    - JSON request/response format

How to change safely:
    - Keep response shapes stable; clients poll job status
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..config import HttpConfig
from ..delivery import DeliveryOutcome, InMemoryDeliveryChannel
from ..export import ExportCoordinator, ExportJob, ExportScope
from ..store import ClaimStatus, RecordStore, Reimbursement

logger = logging.getLogger(__name__)

COORDINATOR_KEY = web.AppKey("coordinator", ExportCoordinator)
STORE_KEY = web.AppKey("store", RecordStore)

_STATUS_FILTERS = {
    "unclaimed": ClaimStatus.UNCLAIMED,
    "claimed": ClaimStatus.CLAIMED,
}


def create_http_app(
    coordinator: ExportCoordinator,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create the HTTP application.

    Args:
        coordinator: Export coordinator (its store backs the record endpoints)
        config: HTTP configuration

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()
    app = web.Application()
    app[COORDINATOR_KEY] = coordinator
    app[STORE_KEY] = coordinator.store

    app.router.add_get("/v1/health", handle_health)
    app.router.add_get("/v1/records", handle_list_records)
    app.router.add_post("/v1/exports/claim", handle_claim_export)
    app.router.add_post("/v1/records/{record_id}/export", handle_record_export)
    app.router.add_post("/v1/exports/selection", handle_selection_export)
    app.router.add_get("/v1/exports", handle_list_jobs)
    app.router.add_get("/v1/exports/{job_id}", handle_get_job)
    app.router.add_get("/v1/exports/{job_id}/archive", handle_get_archive)
    app.router.add_post("/v1/exports/{job_id}/outcome", handle_report_outcome)

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"

        return response

    app.middlewares.append(cors_middleware)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.insert(0, error_middleware)

    return app


def _error(exc: type[web.HTTPException], message: str) -> web.HTTPException:
    return exc(text=json.dumps({"error": message}), content_type="application/json")


def _record_to_dict(record: Reimbursement) -> dict[str, Any]:
    return {
        "record_id": record.record_id,
        "date": record.date.isoformat(),
        "project_code": record.project_code,
        "note": record.note,
        "status": record.status.value,
        "latitude": record.latitude,
        "longitude": record.longitude,
        "place_name": record.place_name,
        "amount": record.amount,
        "has_invoice_image": record.invoice_image is not None,
        "has_payment_image": record.payment_image is not None,
    }


def _job_response(
    job: ExportJob | None,
    coordinator: ExportCoordinator,
    scope: ExportScope,
    record_id: str | None = None,
) -> web.Response:
    if job is not None:
        return web.json_response(job.to_dict(), status=202)
    if coordinator.is_in_flight(scope, record_id):
        return web.json_response(
            {
                "error": "Export already in progress",
                "state": coordinator.state(scope, record_id).value,
            },
            status=409,
        )
    return web.Response(status=204)


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /v1/health."""
    coordinator = request.app[COORDINATOR_KEY]
    return web.json_response(
        {"status": "ok", "active_jobs": len(coordinator.active_jobs())}
    )


async def handle_list_records(request: web.Request) -> web.Response:
    """Handle GET /v1/records - List records, optionally by status."""
    store = request.app[STORE_KEY]
    status_param = request.query.get("status")
    status = None
    if status_param:
        status = _STATUS_FILTERS.get(status_param.lower())
        if status is None:
            raise _error(web.HTTPBadRequest, f"Unknown status filter: {status_param}")

    records = await store.list_records(status=status)
    return web.json_response({"records": [_record_to_dict(r) for r in records]})


async def handle_claim_export(request: web.Request) -> web.Response:
    """Handle POST /v1/exports/claim - Export all unclaimed records."""
    coordinator = request.app[COORDINATOR_KEY]
    job = await coordinator.start_claim_export()
    return _job_response(job, coordinator, ExportScope.LIST)


async def handle_record_export(request: web.Request) -> web.Response:
    """Handle POST /v1/records/{record_id}/export - Export one record."""
    coordinator = request.app[COORDINATOR_KEY]
    record_id = request.match_info["record_id"]

    if not coordinator.is_in_flight(ExportScope.RECORD, record_id):
        if await request.app[STORE_KEY].get_record(record_id) is None:
            raise _error(web.HTTPNotFound, f"Record not found: {record_id}")

    job = await coordinator.start_record_export(record_id)
    return _job_response(job, coordinator, ExportScope.RECORD, record_id)


async def _json_object(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise _error(web.HTTPBadRequest, "Invalid JSON body")
    if not isinstance(body, dict):
        raise _error(web.HTTPBadRequest, "JSON object body is required")
    return body


async def handle_selection_export(request: web.Request) -> web.Response:
    """Handle POST /v1/exports/selection - Export chosen records.

    Body: {"record_ids": [...], "claim": false}. Statuses change only when
    claim is true and the delivery is confirmed.
    """
    coordinator = request.app[COORDINATOR_KEY]
    body = await _json_object(request)

    record_ids = body.get("record_ids")
    if (
        not isinstance(record_ids, list)
        or not record_ids
        or not all(isinstance(r, str) and r for r in record_ids)
    ):
        raise _error(web.HTTPBadRequest, "record_ids must be a non-empty list of ids")

    claim = body.get("claim", False)
    if not isinstance(claim, bool):
        raise _error(web.HTTPBadRequest, "claim must be a boolean")

    job = await coordinator.start_selection_export(record_ids, claim=claim)
    return _job_response(job, coordinator, ExportScope.SELECTION)


async def handle_list_jobs(request: web.Request) -> web.Response:
    """Handle GET /v1/exports - Active and recently finished jobs, newest first."""
    coordinator = request.app[COORDINATOR_KEY]
    jobs = reversed(coordinator.recent_jobs())
    return web.json_response({"jobs": [job.to_dict() for job in jobs]})


async def handle_get_job(request: web.Request) -> web.Response:
    """Handle GET /v1/exports/{job_id} - Job status."""
    coordinator = request.app[COORDINATOR_KEY]
    job = coordinator.get_job(request.match_info["job_id"])
    if job is None:
        raise _error(web.HTTPNotFound, "Export job not found")
    return web.json_response(job.to_dict())


def _pending_channel(request: web.Request) -> InMemoryDeliveryChannel:
    channel = request.app[COORDINATOR_KEY].channel
    if not isinstance(channel, InMemoryDeliveryChannel):
        raise _error(web.HTTPConflict, "Delivery channel does not accept manual outcomes")
    return channel


async def handle_get_archive(request: web.Request) -> web.Response:
    """Handle GET /v1/exports/{job_id}/archive - Download a pending archive."""
    job_id = request.match_info["job_id"]
    pending = _pending_channel(request).get_pending(job_id)
    if pending is None:
        raise _error(web.HTTPNotFound, "No archive awaiting delivery for this job")

    return web.Response(
        body=pending.archive,
        content_type=pending.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{pending.file_name}"'},
    )


async def handle_report_outcome(request: web.Request) -> web.Response:
    """Handle POST /v1/exports/{job_id}/outcome - Resolve a pending delivery."""
    job_id = request.match_info["job_id"]
    channel = _pending_channel(request)
    body = await _json_object(request)

    try:
        outcome = DeliveryOutcome(str(body.get("outcome", "")).lower())
    except ValueError:
        choices = ", ".join(o.value for o in DeliveryOutcome)
        raise _error(web.HTTPBadRequest, f"outcome must be one of: {choices}")

    if not channel.resolve(job_id, outcome):
        raise _error(web.HTTPNotFound, "No delivery pending for this job")

    result = await request.app[COORDINATOR_KEY].wait(job_id)
    job = request.app[COORDINATOR_KEY].get_job(job_id)
    payload = job.to_dict() if job else {"job_id": job_id, "state": result.state.value}
    return web.json_response(payload)
