import logging
from datetime import datetime, timezone

from journey_engine.models.deployments import RollbackItemResult, RollbackResult
from journey_engine.services.context import PublishContext
from journey_engine.services.deployment_tracker import advance_status
from journey_engine.services.errors import (
    DeploymentStateError,
    ExternalApiError,
    RollbackUnavailableError,
)

logger = logging.getLogger(__name__)

ROLLBACK_SOURCE_STATUSES = {"completed", "partial"}


async def rollback_deployment(ctx: PublishContext, deployment_id: str) -> RollbackResult:
    deployment = await ctx.tracker.require(deployment_id)

    async with ctx.locks.hold(deployment.journey_id):
        # Reload under the journey lock so a concurrent batch cannot be missed.
        deployment = await ctx.tracker.require(deployment_id)

        if not deployment.previous_version:
            raise RollbackUnavailableError("No previous version available for rollback")
        if deployment.status not in ROLLBACK_SOURCE_STATUSES:
            raise DeploymentStateError(
                f"Deployment {deployment_id} cannot be rolled back from status {deployment.status}"
            )

        items: list[RollbackItemResult] = []
        restored = 0
        failed = 0
        for snapshot in deployment.previous_version:
            if not snapshot.external_id:
                continue
            try:
                await ctx.client.update_template(snapshot.kind, snapshot.external_id, snapshot.prior_content)
            except ExternalApiError as exc:
                failed += 1
                logger.error(
                    "Failed to restore template",
                    extra={
                        "deployment_id": deployment_id,
                        "item_id": snapshot.item_id,
                        "external_id": snapshot.external_id,
                        "error": str(exc),
                    },
                )
                items.append(
                    RollbackItemResult(
                        item_id=snapshot.item_id,
                        external_id=snapshot.external_id,
                        status="failed",
                        error=str(exc),
                    )
                )
                continue

            restored += 1
            item = deployment.find_item(snapshot.item_id)
            if item is not None:
                item.status = "restored"
            items.append(
                RollbackItemResult(
                    item_id=snapshot.item_id,
                    external_id=snapshot.external_id,
                    status="restored",
                )
            )

        result = RollbackResult(
            success=failed == 0,
            deployment_id=deployment_id,
            total=len(deployment.previous_version),
            restored=restored,
            failed=failed,
            items=items,
        )

        advance_status(deployment, "rolled_back")
        deployment.rolled_back_at = datetime.now(timezone.utc)
        deployment.rollback_results = result
        await ctx.tracker.save(deployment)

    logger.info(
        "Rolled back deployment",
        extra={"deployment_id": deployment_id, "restored": restored, "failed": failed},
    )
    return result
