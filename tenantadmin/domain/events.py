from __future__ import annotations

from typing import TypedDict


PROJECT_CREATED = "project.created"


class ProjectCreatedData(TypedDict):
    project_id: str
    tenant_id: str
    name: str
    created_by: str
