import logging
from typing import Callable

from journey_engine.models.deployments import (
    Deployment,
    DeploymentReport,
    DeploymentReportItem,
    DeploymentReportSummary,
    ProgressEvent,
    PublishedItemResult,
    PublishResult,
    RollbackSnapshot,
    TemplateContent,
    TemplateKind,
    Touchpoint,
)
from journey_engine.models.validation import LinkCheck, ValidationResult
from journey_engine.services.context import PublishContext
from journey_engine.services.deployment_tracker import advance_status
from journey_engine.services.errors import (
    DuplicateTouchpointError,
    ExternalApiError,
    PublisherNotConnectedError,
    SnapshotError,
)
from journey_engine.services.ghl_client import template_content_from_record
from journey_engine.services.validation import duplicate_ids, is_sms_type, sms_message

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


def template_kind(touchpoint: Touchpoint) -> TemplateKind:
    return "sms" if is_sms_type(touchpoint.type) else "email"


def build_template_content(touchpoint: Touchpoint) -> TemplateContent:
    content = touchpoint.content
    if template_kind(touchpoint) == "sms":
        return TemplateContent(name=touchpoint.name, body=sms_message(content))
    return TemplateContent(
        name=touchpoint.name,
        subject=content.get("subject") or "",
        preview_text=content.get("previewText") or "",
        body=content.get("html") or content.get("body") or "",
    )


def _notify(on_progress: ProgressCallback | None, event: ProgressEvent) -> None:
    if on_progress is None:
        return
    try:
        on_progress(event)
    except Exception:
        logger.exception("Progress callback raised", extra={"item_name": event.item_name})


async def _capture_snapshot(
    ctx: PublishContext,
    touchpoint: Touchpoint,
    external_id: str | None,
) -> RollbackSnapshot | None:
    kind = template_kind(touchpoint)
    try:
        record: dict | None = None
        if external_id:
            try:
                record = await ctx.client.get_template(kind, external_id)
            except ExternalApiError as exc:
                if exc.status != 404:
                    raise
        if record is None:
            existing = await ctx.client.find_by_name(kind, touchpoint.name)
            if existing is None or not existing.get("id"):
                return None
            external_id = str(existing["id"])
            # Listings only carry summaries for email; fetch the full template.
            record = existing if kind == "sms" else await ctx.client.get_template(kind, external_id)
    except ExternalApiError as exc:
        raise SnapshotError(touchpoint.id, str(exc)) from exc

    return RollbackSnapshot(
        item_id=touchpoint.id,
        kind=kind,
        external_id=external_id,
        prior_content=template_content_from_record(kind, record),
    )


async def _save_previous_version(
    ctx: PublishContext,
    deployment_id: str,
    touchpoints: list[Touchpoint],
    known_ids: dict[str, str],
) -> list[RollbackSnapshot]:
    snapshots: list[RollbackSnapshot] = []
    for touchpoint in touchpoints:
        try:
            snapshot = await _capture_snapshot(
                ctx,
                touchpoint,
                touchpoint.external_id or known_ids.get(touchpoint.id),
            )
        except SnapshotError as exc:
            logger.warning(
                "Rollback will not be possible for item",
                extra={"deployment_id": deployment_id, "item_id": touchpoint.id, "error": str(exc)},
            )
            continue
        if snapshot is not None:
            snapshots.append(snapshot)

    deployment = await ctx.tracker.require(deployment_id)
    deployment.previous_version = snapshots
    await ctx.tracker.save(deployment)
    return snapshots


async def _abort_on_validation(
    ctx: PublishContext,
    deployment: Deployment,
    validation: ValidationResult,
) -> PublishResult:
    advance_status(deployment, "failed")
    deployment.error = "Validation failed"
    deployment.validation_errors = list(validation.errors)
    await ctx.tracker.save(deployment)
    logger.info(
        "Batch publish aborted by validation",
        extra={
            "deployment_id": deployment.id,
            "journey_id": deployment.journey_id,
            "errors": len(validation.errors),
        },
    )
    return PublishResult(
        success=False,
        deployment_id=deployment.id,
        dry_run=deployment.dry_run,
        total=len(deployment.items),
        validation=validation,
        message="Validation failed. Fix errors before publishing.",
    )


async def batch_publish(
    ctx: PublishContext,
    journey_id: str,
    touchpoints: list[Touchpoint],
    *,
    skip_validation: bool = False,
    dry_run: bool = False,
    on_progress: ProgressCallback | None = None,
) -> PublishResult:
    # Item ids key every status update, so a repeated id could never complete.
    duplicates = duplicate_ids(touchpoints)
    if duplicates:
        raise DuplicateTouchpointError(duplicates)
    if not dry_run and not ctx.client.is_connected:
        raise PublisherNotConnectedError("Publisher not connected. Configure GHL credentials first.")

    async with ctx.locks.hold(journey_id):
        deployment = await ctx.tracker.create(journey_id, touchpoints, dry_run=dry_run)
        logger.info(
            "Started batch publish",
            extra={
                "deployment_id": deployment.id,
                "journey_id": journey_id,
                "items": len(touchpoints),
                "dry_run": dry_run,
            },
        )

        validation: ValidationResult | None = None
        if not skip_validation:
            validation = ctx.validator.validate_batch(touchpoints)
            if not validation.is_valid:
                return await _abort_on_validation(ctx, deployment, validation)

        known_ids: dict[str, str] = {}
        if not dry_run:
            known_ids = await ctx.tracker.known_external_ids(journey_id)
            await _save_previous_version(ctx, deployment.id, touchpoints, known_ids)

        total = len(touchpoints)
        item_results: list[PublishedItemResult] = []
        for index, touchpoint in enumerate(touchpoints, start=1):
            _notify(
                on_progress,
                ProgressEvent(current=index, total=total, item_name=touchpoint.name, status="publishing"),
            )

            if dry_run:
                await ctx.tracker.update_item_status(deployment.id, touchpoint.id, "skipped")
                item_result = PublishedItemResult(
                    id=touchpoint.id,
                    name=touchpoint.name,
                    status="skipped",
                    message="Dry run - no changes made",
                )
            else:
                item_result = await _publish_item(
                    ctx,
                    deployment.id,
                    touchpoint,
                    touchpoint.external_id or known_ids.get(touchpoint.id),
                )

            item_results.append(item_result)
            _notify(
                on_progress,
                ProgressEvent(current=index, total=total, item_name=touchpoint.name, status=item_result.status),
            )

        final = await ctx.tracker.finalize(deployment.id)

    summary = final.summary
    logger.info(
        "Finished batch publish",
        extra={
            "deployment_id": final.id,
            "journey_id": journey_id,
            "status": final.status,
            "published": summary.published,
            "failed": summary.failed,
            "skipped": summary.skipped,
        },
    )
    return PublishResult(
        success=summary.failed == 0,
        deployment_id=final.id,
        dry_run=dry_run,
        total=summary.total,
        published=summary.published,
        failed=summary.failed,
        skipped=summary.skipped,
        items=item_results,
        validation=validation,
    )


async def _publish_item(
    ctx: PublishContext,
    deployment_id: str,
    touchpoint: Touchpoint,
    external_id: str | None,
) -> PublishedItemResult:
    kind = template_kind(touchpoint)
    try:
        upsert = await ctx.client.upsert_by_name(kind, build_template_content(touchpoint), external_id)
    except ExternalApiError as exc:
        logger.error(
            "Failed to publish touchpoint",
            extra={"deployment_id": deployment_id, "item_id": touchpoint.id, "error": str(exc)},
        )
        await ctx.tracker.update_item_status(deployment_id, touchpoint.id, "failed", error=str(exc))
        return PublishedItemResult(
            id=touchpoint.id,
            name=touchpoint.name,
            status="failed",
            error=str(exc),
        )

    await ctx.tracker.update_item_status(
        deployment_id,
        touchpoint.id,
        "published",
        external_id=upsert.external_id,
        action=upsert.action,
        error=None,
    )
    return PublishedItemResult(
        id=touchpoint.id,
        name=touchpoint.name,
        status="published",
        external_id=upsert.external_id,
        action=upsert.action,
    )


def validate_touchpoints(ctx: PublishContext, touchpoints: list[Touchpoint]) -> ValidationResult:
    return ctx.validator.validate_batch(touchpoints)


async def get_status(ctx: PublishContext, deployment_id: str) -> Deployment:
    return await ctx.tracker.require(deployment_id)


async def list_deployments(ctx: PublishContext, journey_id: str | None = None) -> list[Deployment]:
    return await ctx.tracker.list(journey_id)


async def get_deployment_report(ctx: PublishContext, deployment_id: str) -> DeploymentReport:
    deployment = await ctx.tracker.require(deployment_id)
    statuses = [item.status for item in deployment.items]

    duration_ms = None
    if deployment.completed_at is not None:
        duration_ms = int((deployment.completed_at - deployment.created_at).total_seconds() * 1000)

    return DeploymentReport(
        id=deployment.id,
        journey_id=deployment.journey_id,
        status=deployment.status,
        created_at=deployment.created_at,
        completed_at=deployment.completed_at,
        duration_ms=duration_ms,
        items=[
            DeploymentReportItem(
                name=item.name,
                type=item.type,
                status=item.status,
                external_id=item.external_id,
                error=item.error,
            )
            for item in deployment.items
        ],
        summary=DeploymentReportSummary(
            total=len(statuses),
            published=statuses.count("published"),
            failed=statuses.count("failed"),
            skipped=statuses.count("skipped"),
            pending=statuses.count("pending"),
            restored=statuses.count("restored"),
        ),
    )


async def check_links(ctx: PublishContext, html: str) -> list[LinkCheck]:
    return await ctx.link_checker.check(html)
