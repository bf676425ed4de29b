"""
Domain-service gateway for trigger actions that mutate business entities.

Task and entity tables (projects, invoices, ...) belong to the host
application, not to the automation core. `create_task` and `update_status`
actions reach them only through a DomainGateway registered on the app:

    app.extensions["domain_gateway"] = MyDomainGateway()

Without a registration the log-only gateway is used, mirroring how
EmailService behaves when no SMTP server is configured.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import current_app

logger = logging.getLogger(__name__)


class DomainGateway:
    """Interface the host application implements."""

    def create_task(
        self,
        *,
        project_id: int | None,
        title: str,
        description: str = "",
        assignee: str | None = None,
        due_date: str | None = None,
        priority: str = "medium",
    ) -> dict[str, Any]:
        raise NotImplementedError

    def update_status(
        self,
        *,
        entity_type: str,
        entity_id: int | str,
        status: str,
        field: str = "status",
    ) -> dict[str, Any]:
        raise NotImplementedError


class LoggingDomainGateway(DomainGateway):
    """Log-only gateway for development and deployments without domain hooks."""

    def create_task(self, *, project_id, title, description="", assignee=None,
                    due_date=None, priority="medium"):
        logger.info(
            "Task (log-only): project=%s title='%s' assignee=%s due=%s",
            project_id, title, assignee, due_date,
        )
        return {
            "mode": "log_only",
            "project_id": project_id,
            "title": title,
            "assignee": assignee,
            "due_date": due_date,
            "priority": priority,
        }

    def update_status(self, *, entity_type, entity_id, status, field="status"):
        logger.info(
            "Status update (log-only): %s/%s %s=%s", entity_type, entity_id, field, status,
        )
        return {
            "mode": "log_only",
            "entity_type": entity_type,
            "entity_id": entity_id,
            "field": field,
            "status": status,
        }


_default_gateway = LoggingDomainGateway()


def get_domain_gateway() -> DomainGateway:
    return current_app.extensions.get("domain_gateway") or _default_gateway
