import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from journey_engine.models.deployments import (
    Deployment,
    DeploymentHistoryItem,
    DeploymentHistoryRequest,
    DeploymentHistoryResponse,
    DeploymentIdRequest,
    DeploymentReport,
    PublishRequest,
    PublishResult,
    RollbackResult,
    ValidateRequest,
)
from journey_engine.models.validation import LinkCheckRequest, LinkCheckResponse, ValidationResult
from journey_engine.services import publish_service, rollback_service
from journey_engine.services.context import PublishContext
from journey_engine.services.errors import (
    DeploymentNotFoundError,
    DeploymentStateError,
    DuplicateTouchpointError,
    JourneyEngineError,
    PersistenceError,
    PublisherNotConnectedError,
    RollbackUnavailableError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deployments", tags=["deployments"])


def get_publish_context(request: Request) -> PublishContext:
    ctx = getattr(request.app.state, "publish_context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Publish context not initialized")
    return ctx


def _http_error(error: JourneyEngineError) -> HTTPException:
    if isinstance(error, DeploymentNotFoundError):
        status_code = 404
    elif isinstance(error, (DuplicateTouchpointError, PublisherNotConnectedError, RollbackUnavailableError)):
        status_code = 400
    elif isinstance(error, DeploymentStateError):
        status_code = 409
    elif isinstance(error, PersistenceError):
        status_code = 500
    else:
        status_code = 502
    return HTTPException(status_code=status_code, detail=error.to_detail())


@router.post("/publish", response_model=PublishResult)
async def deployments_publish(
    body: PublishRequest,
    ctx: PublishContext = Depends(get_publish_context),
) -> PublishResult:
    try:
        result = await publish_service.batch_publish(
            ctx,
            body.journey_id,
            body.touchpoints,
            skip_validation=body.skip_validation,
            dry_run=body.dry_run,
        )
    except JourneyEngineError as error:
        raise _http_error(error) from error

    if result.validation is not None and not result.validation.is_valid:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "validation_failed",
                "message": result.message,
                "deployment_id": result.deployment_id,
                "errors": [issue.model_dump() for issue in result.validation.errors],
            },
        )
    return result


@router.post("/validate", response_model=ValidationResult)
async def deployments_validate(
    body: ValidateRequest,
    ctx: PublishContext = Depends(get_publish_context),
) -> ValidationResult:
    return publish_service.validate_touchpoints(ctx, body.touchpoints)


@router.post("/validate-links", response_model=LinkCheckResponse)
async def deployments_validate_links(
    body: LinkCheckRequest,
    ctx: PublishContext = Depends(get_publish_context),
) -> LinkCheckResponse:
    links = await publish_service.check_links(ctx, body.content)
    return LinkCheckResponse(valid=all(link.valid for link in links), links=links)


@router.post("/status", response_model=Deployment)
async def deployments_status(
    body: DeploymentIdRequest,
    ctx: PublishContext = Depends(get_publish_context),
) -> Deployment:
    try:
        return await publish_service.get_status(ctx, body.id)
    except JourneyEngineError as error:
        raise _http_error(error) from error


@router.post("/report", response_model=DeploymentReport)
async def deployments_report(
    body: DeploymentIdRequest,
    ctx: PublishContext = Depends(get_publish_context),
) -> DeploymentReport:
    try:
        return await publish_service.get_deployment_report(ctx, body.id)
    except JourneyEngineError as error:
        raise _http_error(error) from error


@router.post("/history", response_model=DeploymentHistoryResponse)
async def deployments_history(
    body: DeploymentHistoryRequest,
    ctx: PublishContext = Depends(get_publish_context),
) -> DeploymentHistoryResponse:
    try:
        deployments = await publish_service.list_deployments(ctx, body.journey_id)
    except JourneyEngineError as error:
        raise _http_error(error) from error

    return DeploymentHistoryResponse(
        data=[
            DeploymentHistoryItem(
                id=deployment.id,
                journey_id=deployment.journey_id,
                status=deployment.status,
                dry_run=deployment.dry_run,
                created_at=deployment.created_at.isoformat(),
                completed_at=deployment.completed_at.isoformat() if deployment.completed_at else None,
                rolled_back_at=deployment.rolled_back_at.isoformat() if deployment.rolled_back_at else None,
                summary=deployment.summary,
            )
            for deployment in deployments
        ]
    )


@router.post("/rollback", response_model=RollbackResult)
async def deployments_rollback(
    body: DeploymentIdRequest,
    ctx: PublishContext = Depends(get_publish_context),
) -> RollbackResult:
    try:
        return await rollback_service.rollback_deployment(ctx, body.id)
    except JourneyEngineError as error:
        logger.warning("Rollback rejected", extra={"deployment_id": body.id, "error": str(error)})
        raise _http_error(error) from error
