"""Knowledge ingestion and retrieval endpoints."""

from typing import Dict

from fastapi import APIRouter, Depends, Request

from app.api.knowledge.schemas import (
    ProcessRequest,
    ProcessSummary,
    RetrievalResponse,
    RetrieveRequest,
    SyncConfigRequest,
    SyncConfigResponse,
    SyncRequest,
    SyncSummary,
)
from app.config.logger import app_logger
from app.services.container import KnowledgeServices
from app.services.content_provider import ProviderCredentials
from app.utils.errors import ConfigurationError, PartialBatchFailure, ValidationError
from app.utils.responses import SuccessResponse, success_response

router = APIRouter(prefix="/v1/knowledge", tags=["knowledge"])


def get_services(request: Request) -> KnowledgeServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigurationError("Knowledge services are not initialized")
    return services


@router.post(
    "/folders/{folder_id}/sync",
    response_model=SuccessResponse[SyncSummary],
    summary="Reconcile a folder against the persisted sync state",
)
async def sync_folder(
    folder_id: str,
    payload: SyncRequest,
    services: KnowledgeServices = Depends(get_services),
) -> SuccessResponse[SyncSummary]:
    """List the folder recursively and upsert one sync row per file.

    Returns 409 if another worker holds the folder lock.
    """
    refresh_token = payload.refresh_token
    if not payload.access_token and not refresh_token:
        config = await services.store.get_sync_config(folder_id)
        refresh_token = config.refresh_token if config else None
    if not payload.access_token and not refresh_token:
        raise ValidationError("An access token or saved refresh token is required to sync this folder")

    credentials = ProviderCredentials(access_token=payload.access_token, refresh_token=refresh_token)
    summary = await services.coordinator.ingest_folder(
        folder_id, credentials, team_context=payload.team_context, user_id=payload.user_id
    )
    return success_response(
        summary,
        message=f"Folder synced: {summary.new} new, {summary.updated} updated, {summary.skipped} unchanged",
    )


@router.post(
    "/process",
    response_model=SuccessResponse[ProcessSummary],
    summary="Claim and process a batch of pending files",
)
async def process_pending(
    payload: ProcessRequest,
    services: KnowledgeServices = Depends(get_services),
) -> SuccessResponse[ProcessSummary]:
    summary = await services.coordinator.process_pending(limit=payload.limit)
    if summary.failed:
        raise PartialBatchFailure(
            f"{summary.failed} of {summary.claimed} files failed to process",
            results=[result.model_dump() for result in summary.results],
        )
    return success_response(summary, message=f"Processed {summary.processed} files")


@router.post(
    "/retrieve",
    response_model=SuccessResponse[RetrievalResponse],
    summary="Retrieve structured rows and passages for a query",
)
async def retrieve(
    payload: RetrieveRequest,
    services: KnowledgeServices = Depends(get_services),
) -> SuccessResponse[RetrievalResponse]:
    app_logger.info(f"Retrieve request - team={payload.user.team_context} query_length={len(payload.query)}")
    response = await services.retriever.retrieve(payload.query, payload.user)
    return success_response(response, message=f"Found {len(response.results)} results")


@router.get("/sync/stats", response_model=SuccessResponse[Dict[str, int]])
async def sync_stats(services: KnowledgeServices = Depends(get_services)) -> SuccessResponse[Dict[str, int]]:
    stats = await services.coordinator.get_sync_stats()
    return success_response(stats, message="Sync statistics retrieved")


@router.put("/sync/configs", response_model=SuccessResponse[SyncConfigResponse])
async def save_sync_config(
    payload: SyncConfigRequest,
    services: KnowledgeServices = Depends(get_services),
) -> SuccessResponse[SyncConfigResponse]:
    config = await services.coordinator.save_sync_config(
        payload.folder_id,
        folder_name=payload.folder_name,
        team_context=payload.team_context,
        sync_enabled=payload.sync_enabled,
        refresh_token=payload.refresh_token,
        user_id=payload.user_id,
    )
    return success_response(
        SyncConfigResponse(
            folder_id=config.folder_id,
            folder_name=config.folder_name,
            team_context=config.team_context,
            sync_enabled=config.sync_enabled,
            last_sync_at=config.last_sync_at.isoformat() if config.last_sync_at else None,
        ),
        message="Sync configuration saved",
    )
