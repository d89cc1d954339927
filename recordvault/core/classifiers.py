"""
Category classifiers used by the audit.

Each classifier decides whether a parsed document is still connected to the application
and what should happen to it. Classifiers are looked up in a registry keyed by category,
falling back to GenericClassifier for categories nobody registered.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .db import SystemOfRecord

CONNECTED = "connected"
DISCONNECTED = "disconnected"
ORPHANED = "orphaned"
CORRUPTED = "corrupted"

MIGRATE = "migrate"
BACKUP_AND_REMOVE = "backup_and_remove"
REMOVE = "remove"
KEEP = "keep"

STATUSES = [CONNECTED, DISCONNECTED, ORPHANED, CORRUPTED]
RECOMMENDATIONS = [MIGRATE, BACKUP_AND_REMOVE, REMOVE, KEEP]

RECENT_EVENT_WINDOW = timedelta(days=365)


@dataclass
class Classification:
    status: str
    reason: str
    recommendation: str


@dataclass
class ClassificationContext:
    """What a classifier may consult besides the document itself."""
    system_of_record: Optional[SystemOfRecord]
    now: datetime


def _non_empty(data: Any) -> bool:
    return isinstance(data, (dict, list)) and len(data) > 0


class Classifier:
    """Base classifier: non-empty documents are kept, empty ones removed."""

    def classify(self, file_id: str, data: Any, context: ClassificationContext) -> Classification:
        if _non_empty(data):
            return Classification(CONNECTED, "Contains valid data structure", KEEP)
        return Classification(DISCONNECTED, "Empty or invalid data", REMOVE)


class GenericClassifier(Classifier):
    pass


class ClientClassifier(Classifier):
    """Clients are migrated into the system of record unless already there or incomplete."""

    def classify(self, file_id, data, context):
        if not isinstance(data, dict):
            return Classification(ORPHANED, "Client document is not an object", BACKUP_AND_REMOVE)

        company_number = data.get("companyNumber") or data.get("company_number") or file_id
        if company_number and context.system_of_record is not None:
            if context.system_of_record.get_client_by_number(str(company_number)):
                return Classification(DISCONNECTED, "Client already migrated to database", BACKUP_AND_REMOVE)

        if not data.get("companyNumber") and not data.get("company_number"):
            return Classification(ORPHANED, "Missing required company number", BACKUP_AND_REMOVE)

        if not data.get("companyName") and not data.get("company_name") and not data.get("name"):
            return Classification(ORPHANED, "Missing required company name", BACKUP_AND_REMOVE)

        return Classification(CONNECTED, "Valid client data pending migration", MIGRATE)


class TaxCalculationClassifier(Classifier):

    def classify(self, file_id, data, context):
        if not isinstance(data, dict):
            return Classification(ORPHANED, "Calculation document is not an object", BACKUP_AND_REMOVE)

        sor = context.system_of_record
        if data.get("id") and sor is not None and sor.get_calculation_by_id(str(data["id"])):
            return Classification(DISCONNECTED, "Tax calculation already migrated to database", BACKUP_AND_REMOVE)

        client_id = data.get("clientId") or data.get("client_id")
        if not client_id:
            return Classification(ORPHANED, "Missing required client reference", BACKUP_AND_REMOVE)

        if sor is None or not sor.get_client_by_number(str(client_id)):
            return Classification(ORPHANED, "Referenced client not found in database", BACKUP_AND_REMOVE)

        return Classification(CONNECTED, "Valid tax calculation pending migration", MIGRATE)


class ConfigClassifier(Classifier):

    def classify(self, file_id, data, context):
        if _non_empty(data):
            return Classification(CONNECTED, "Active configuration file", KEEP)
        return Classification(DISCONNECTED, "Empty or invalid configuration", REMOVE)


class IndexClassifier(Classifier):
    """Index files are generated and can always be rebuilt."""

    def classify(self, file_id, data, context):
        return Classification(DISCONNECTED, "System-generated index file", REMOVE)


class EventClassifier(Classifier):
    """Time-sensitive documents are kept while they hold an event from the past year or later."""

    def classify(self, file_id, data, context):
        events = data
        if isinstance(data, dict):
            events = data.get("events")

        if isinstance(events, list):
            recent = [event for event in events if self._is_recent(event, context.now)]
            if recent:
                return Classification(CONNECTED, f"Contains {len(recent)} recent events", KEEP)

        return Classification(DISCONNECTED, "No recent events found", BACKUP_AND_REMOVE)

    @staticmethod
    def _is_recent(event: Any, now: datetime) -> bool:
        if not isinstance(event, dict):
            return False
        raw = event.get("date") or event.get("start")
        if not isinstance(raw, str):
            return False
        try:
            moment = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return False
        if moment.tzinfo is None and now.tzinfo is not None:
            moment = moment.replace(tzinfo=now.tzinfo)
        elif moment.tzinfo is not None and now.tzinfo is None:
            moment = moment.replace(tzinfo=None)
        return now - moment <= RECENT_EVENT_WINDOW


class TemplateClassifier(Classifier):

    def classify(self, file_id, data, context):
        if isinstance(data, dict) and (data.get("id") or data.get("name") or data.get("title")):
            return Classification(CONNECTED, "Valid template definition", KEEP)
        return Classification(ORPHANED, "Missing template identifier", BACKUP_AND_REMOVE)


class UserClassifier(Classifier):

    def classify(self, file_id, data, context):
        if isinstance(data, dict) and (data.get("id") or data.get("email")):
            return Classification(CONNECTED, "Active user account", KEEP)
        return Classification(ORPHANED, "Missing user identifier", BACKUP_AND_REMOVE)


def default_registry() -> Dict[str, Classifier]:
    """Build the category -> classifier mapping the audit starts with."""
    template = TemplateClassifier()
    events = EventClassifier()
    return {
        "clients": ClientClassifier(),
        "tax-calculations": TaxCalculationClassifier(),
        "config": ConfigClassifier(),
        "indexes": IndexClassifier(),
        "calendar": events,
        "events": events,
        "templates": template,
        "service-templates": template,
        "task-templates": template,
        "users": UserClassifier(),
    }
