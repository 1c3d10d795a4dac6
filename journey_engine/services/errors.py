class JourneyEngineError(Exception):
    code = "journey_engine_error"

    def to_detail(self) -> dict:
        return {"code": self.code, "message": str(self)}


class ExternalApiError(JourneyEngineError):
    """Non-2xx response or transport failure from the delivery platform."""

    code = "ghl_request_failed"

    def __init__(self, status: int | None, body: str) -> None:
        self.status = status
        self.body = body
        if status is None:
            super().__init__(f"GHL API Error: {body}")
        else:
            super().__init__(f"GHL API Error: {status} - {body}")

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["status_code"] = self.status
        return detail


class PublisherNotConnectedError(JourneyEngineError):
    code = "publisher_not_connected"


class SnapshotError(JourneyEngineError):
    code = "snapshot_failed"

    def __init__(self, item_id: str, message: str) -> None:
        self.item_id = item_id
        super().__init__(f"Could not capture previous version for {item_id}: {message}")


class PersistenceError(JourneyEngineError):
    code = "persistence_failed"


class DeploymentNotFoundError(JourneyEngineError):
    code = "deployment_not_found"

    def __init__(self, deployment_id: str) -> None:
        self.deployment_id = deployment_id
        super().__init__(f"Deployment not found: {deployment_id}")


class RollbackUnavailableError(JourneyEngineError):
    code = "rollback_unavailable"


class DeploymentStateError(JourneyEngineError):
    code = "invalid_deployment_state"


class DuplicateTouchpointError(JourneyEngineError):
    code = "duplicate_touchpoint_id"

    def __init__(self, item_ids: list[str]) -> None:
        self.item_ids = item_ids
        super().__init__(f"Duplicate touchpoint id: {', '.join(item_ids)}")
