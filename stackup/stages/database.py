"""Recreate the database of every enabled service."""

from typing import Any, Dict

from stackup.resources.database import CharsetSpec
from stackup.services import Service
from stackup.stages.base import Stage


class DatabaseStage(Stage):
    """
    Drop and recreate service databases.

    Runs only with ``mysql`` enabled. A database belongs to a service and
    is recreated only when that service (or its family) is enabled.
    """

    name = "databases"
    services = (Service.MYSQL,)

    def execute(self) -> Dict[str, Any]:
        manager = self.context.managers["database"]
        created = []
        for spec in self.config.database.databases:
            if not self.selection.is_enabled(spec.service):
                continue
            self.context.record(manager.ensure_present(spec.name, CharsetSpec(spec.charset)))
            created.append(spec.name)
        return {"databases": created}
