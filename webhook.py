"""
Timer handling for the Focus Dial webhook.

The device only knows its own project ids, so every call first resolves the
device project to a stored project (creating it on first sight) and then
opens or closes a time entry for it.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import ProjectMetadataPolicy
from database import Database, as_utc, utcnow
from errors import STATUS_CODES, Conflict, ErrorKind, InternalError, NotFound, TrackerError, ValidationError
from events import ChangeNotifier
from schemas import Project, TimeEntry

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("action", "device_project_id", "project_name", "project_color")


class WebhookAction(str, Enum):
    START = "start_timer"
    STOP = "stop_timer"

    @classmethod
    def parse(cls, value: str) -> "WebhookAction":
        aliases = {"start": cls.START, "stop": cls.STOP}
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Invalid action specified: {value!r}")


class WebhookPayload(BaseModel):
    action: Optional[str] = None
    device_project_id: Optional[str] = None
    project_name: Optional[str] = None
    project_color: Optional[str] = None
    description: Optional[str] = None


class WebhookResult(BaseModel):
    success: bool
    message: Optional[str] = None
    entry_id: Optional[str] = None
    project_id: Optional[str] = None
    duration: Optional[int] = None
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @classmethod
    def failure(cls, error: TrackerError) -> "WebhookResult":
        return cls(success=False, error=error.kind, detail=error.message)

    @property
    def status_code(self) -> int:
        return 200 if self.success else STATUS_CODES[self.error]

    def to_response(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class TimerService:
    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = utcnow,
        metadata_policy: ProjectMetadataPolicy = ProjectMetadataPolicy.NEVER,
        notifier: Optional[ChangeNotifier] = None,
        hide_internal_errors: bool = False,
    ):
        self.database = database
        self.clock = clock
        self.metadata_policy = metadata_policy
        self.notifier = notifier
        self.hide_internal_errors = hide_internal_errors

    def _publish(self, collection: str, operation: str, document_id: str, user_id: str) -> None:
        if self.notifier is not None:
            self.notifier.publish(collection, operation, document_id, user_id)

    def find_or_create_project(self, user_id: str, device_project_id: str, name: str, color: str) -> str:
        existing = self.database["project"].find_one({"user_id": user_id, "device_project_id": device_project_id})
        if existing:
            project_id = str(existing["_id"])
            logger.debug("Found project %s for device project %s", project_id, device_project_id)
            self._refresh_metadata(existing, name, color)
            return project_id

        project = Project(user_id=user_id, name=name, color=color, device_project_id=device_project_id)
        try:
            project_id = self.database.create_document("project", project.model_dump(exclude_none=True))
        except DuplicateKeyError:
            logger.warning("Concurrent creation of device project %s for user %s", device_project_id, user_id)
            raise Conflict("Project creation conflict, please retry.")

        logger.info("Created project %s (%s) for device project %s", project_id, name, device_project_id)
        self._publish("project", "insert", project_id, user_id)
        return project_id

    def _refresh_metadata(self, project: Mapping[str, Any], name: str, color: str) -> None:
        if self.metadata_policy is ProjectMetadataPolicy.NEVER:
            return
        if self.metadata_policy is ProjectMetadataPolicy.IF_CHANGED:
            if project.get("name") == name and project.get("color") == color:
                return
        # same rules as a first sighting
        Project(user_id=project["user_id"], name=name, color=color)
        self.database["project"].update_one(
            {"_id": project["_id"]},
            {"$set": {"name": name, "color": color, "updated_at": utcnow()}},
        )
        logger.info("Updated project %s metadata to %s %s", project["_id"], name, color)
        self._publish("project", "update", str(project["_id"]), project["user_id"])

    def start_timer(self, user_id: str, project_id: str, description: Optional[str] = None) -> str:
        # a running entry for the same project is not looked for; a second start opens a second entry
        entry = TimeEntry(
            user_id=user_id,
            project_id=project_id,
            start_time=self.clock(),
            description=description or None,
        )
        entry_id = self.database.create_document("timeentry", entry.model_dump())
        logger.info("Timer started for user %s, project %s, entry %s", user_id, project_id, entry_id)
        self._publish("timeentry", "insert", entry_id, user_id)
        return entry_id

    def stop_timer(self, user_id: str, project_id: str, description: Optional[str] = None) -> Tuple[str, int]:
        active = self.database["timeentry"].find_one(
            {"user_id": user_id, "project_id": project_id, "end_time": None},
            sort=[("start_time", DESCENDING)],
        )
        if not active:
            logger.warning("No active timer to stop for user %s, project %s", user_id, project_id)
            raise NotFound("No active timer found for this project")

        now = self.clock()
        duration = math.floor((as_utc(now) - as_utc(active["start_time"])).total_seconds())
        update = {"end_time": now, "duration": duration, "updated_at": utcnow()}
        if description:
            update["description"] = description
        self.database["timeentry"].update_one({"_id": active["_id"]}, {"$set": update})

        entry_id = str(active["_id"])
        logger.info("Timer stopped for user %s, project %s, entry %s after %ss", user_id, project_id, entry_id, duration)
        self._publish("timeentry", "update", entry_id, user_id)
        return entry_id, duration

    def handle(self, payload: Union[WebhookPayload, Mapping[str, Any]], user_id: str) -> WebhookResult:
        """Run one webhook call; failures come back as a result, never as an exception."""
        try:
            return self._handle(payload, user_id)
        except TrackerError as e:
            return WebhookResult.failure(e)
        except PyMongoError as e:
            logger.exception("Database error while processing webhook")
            detail = "Internal server error" if self.hide_internal_errors else f"Internal server error: {e}"
            return WebhookResult.failure(InternalError(detail))

    def _handle(self, payload: Union[WebhookPayload, Mapping[str, Any]], user_id: str) -> WebhookResult:
        if not isinstance(payload, WebhookPayload):
            try:
                payload = WebhookPayload.model_validate(payload)
            except PydanticValidationError as e:
                raise ValidationError(f"Malformed webhook payload: {e.errors()[0]['msg']}")

        missing = [f for f in REQUIRED_FIELDS if not getattr(payload, f)]
        if missing:
            raise ValidationError("Missing required fields: " + ", ".join(missing))

        action = WebhookAction.parse(payload.action)
        try:
            project_id = self.find_or_create_project(
                user_id, payload.device_project_id, payload.project_name, payload.project_color
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid project data: {e.errors()[0]['msg']}")

        if action is WebhookAction.START:
            entry_id = self.start_timer(user_id, project_id, payload.description)
            return WebhookResult(success=True, message="Timer started", entry_id=entry_id, project_id=project_id)

        entry_id, duration = self.stop_timer(user_id, project_id, payload.description)
        return WebhookResult(
            success=True, message="Timer stopped", entry_id=entry_id, project_id=project_id, duration=duration
        )
