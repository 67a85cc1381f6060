from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable
from uuid import UUID

import httpx
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from tenantadmin.core.config import get_settings
from tenantadmin.core.errors import RelationshipStoreError
from tenantadmin.persistence.repos import projects as projects_repo
from tenantadmin.services.authz.relationships import RelationshipStore, get_relationship_store
from tenantadmin.services.resilience import RetryPolicy, default_retry_policy, retry_async
from tenantadmin.services.telemetry import record_external_call
from tenantadmin.services.workflows.retry import StepOutcome


logger = logging.getLogger(__name__)

NOTIFICATION_TYPE = "project_created"
# Configuration keys that grant extra project relations during provisioning.
CONFIG_RELATION_KEYS = {"editors": "editor", "viewers": "viewer"}
CONFIG_MAX_SUBJECTS = 100

SubjectList = Annotated[list[UUID], Field(max_length=CONFIG_MAX_SUBJECTS)]


class ProvisioningConfiguration(BaseModel):
    """Configuration accepted while a project is provisioning.

    Subjects are user ids and are stored in canonical UUID form.
    """

    editors: SubjectList | None = None
    viewers: SubjectList | None = None

    model_config = {"extra": "forbid"}

    def as_config(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


@dataclass(frozen=True)
class StepContext:
    project_id: str
    tenant_id: str
    run: int
    input: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)


def resource_ids_for(project_id: str) -> dict[str, str]:
    # Derived from the project id alone so every re-run yields the same ids.
    key = project_id.replace("-", "").lower()
    return {
        "database": f"db_{key}",
        "storage": f"storage_{key}",
        "cache": f"cache_{key}",
    }


class ProvisioningActivities:
    """The three provisioning steps. Each one is safe to run more than once."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any] | None = None,
        store: RelationshipStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        webhook_policy: RetryPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._http_client = http_client
        self._webhook_policy = webhook_policy

    def _sessions(self):
        if self._session_factory is not None:
            return self._session_factory()
        from tenantadmin.persistence.db import SessionLocal

        return SessionLocal()

    @property
    def store(self) -> RelationshipStore:
        return self._store or get_relationship_store()

    async def provision_resources(self, ctx: StepContext) -> StepOutcome:
        resource_ids = resource_ids_for(ctx.project_id)
        try:
            async with self._sessions() as session:
                for kind, external_id in resource_ids.items():
                    await projects_repo.upsert_resource(
                        session,
                        project_id=ctx.project_id,
                        tenant_id=ctx.tenant_id,
                        kind=kind,
                        external_id=external_id,
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            return StepOutcome.failure(f"resource provisioning failed: {exc}")
        logger.info("resources provisioned project=%s ids=%s", ctx.project_id, sorted(resource_ids.values()))
        return StepOutcome.ok(resource_ids)

    async def configure_permissions(self, ctx: StepContext) -> StepOutcome:
        grants: list[tuple[str, str]] = []
        creator = ctx.input.get("created_by")
        if creator:
            grants.append((str(creator), "owner"))
        try:
            config = ProvisioningConfiguration.model_validate(ctx.config).as_config()
        except ValidationError as exc:
            return StepOutcome.failure(f"invalid configuration: {exc.error_count()} error(s)")
        for key, relation in CONFIG_RELATION_KEYS.items():
            for subject in config.get(key, []):
                grants.append((subject, relation))
        try:
            for subject_id, relation in grants:
                await self.store.write(subject_id, relation, "project", ctx.project_id)
        except RelationshipStoreError as exc:
            return StepOutcome.failure(str(exc))
        logger.info("permissions configured project=%s grants=%s", ctx.project_id, len(grants))
        return StepOutcome.ok()

    async def send_notifications(self, ctx: StepContext) -> StepOutcome:
        settings = get_settings()
        if not settings.notify_webhook_url:
            logger.info(
                "notification type=%s project=%s tenant=%s (no webhook configured)",
                NOTIFICATION_TYPE,
                ctx.project_id,
                ctx.tenant_id,
            )
            return StepOutcome.ok()
        payload = {
            "type": NOTIFICATION_TYPE,
            "project_id": ctx.project_id,
            "tenant_id": ctx.tenant_id,
            "name": ctx.input.get("name"),
            "config": ctx.config,
        }
        # Receivers dedupe on this key, so re-runs never double-notify.
        headers = {"Idempotency-Key": f"{NOTIFICATION_TYPE}:{ctx.project_id}"}
        client = self._http_client or httpx.AsyncClient(
            timeout=settings.notify_webhook_timeout_ms / 1000.0
        )
        started = time.monotonic()
        success = False
        try:
            async def _send() -> httpx.Response:
                response = await client.post(settings.notify_webhook_url, json=payload, headers=headers)
                response.raise_for_status()
                return response

            await retry_async(_send, policy=self._webhook_policy or default_retry_policy())
            success = True
        except (httpx.HTTPError, TimeoutError, OSError) as exc:
            return StepOutcome.failure(f"notification webhook failed: {exc}")
        finally:
            record_external_call(
                integration="notify_webhook",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )
            if self._http_client is None:
                await client.aclose()
        return StepOutcome.ok()
