"""Persistent step tracking for resumable workflow runs."""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class TemplateTracking(BaseModel):
    """Tracking record for the active workflow template.

    `completed_steps` drives `executeOnce` skipping across restarts;
    `not_completed_steps` holds steps that started but never finished and
    drives fallback substitution.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    active_template: str = Field(default="", description="Template the tracking belongs to")
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_steps: list[int] = Field(default_factory=list)
    not_completed_steps: list[int] = Field(default_factory=list)
    resume_from_last_step: bool = Field(default=True)


class TrackingStore:
    """Load and persist `TemplateTracking` as JSON.

    Every mutation is written through immediately so a crash never loses a
    completion marker.
    """

    def __init__(self, path: Path) -> None:
        """Initialize the tracking store.

        Args:
            path: Location of the tracking JSON file.
        """
        self.path = path

    def load(self) -> TemplateTracking:
        """Load tracking data.

        Returns:
            The persisted record, or a fresh one when the file is missing or unreadable.
        """
        if not self.path.exists():
            return TemplateTracking()

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return TemplateTracking.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to read tracking file {self.path}: {e}")
            logger.warning("Using fresh tracking data")
            return TemplateTracking()

    def save(self, tracking: TemplateTracking) -> None:
        tracking.last_updated = datetime.now(UTC)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(tracking.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False)
            + "\n",
            encoding="utf-8",
        )

    def completed_steps(self) -> set[int]:
        return set(self.load().completed_steps)

    def not_completed_steps(self) -> set[int]:
        return set(self.load().not_completed_steps)

    def mark_completed(self, index: int) -> None:
        """Record a step as completed and drop it from the not-completed list."""
        tracking = self.load()
        if index not in tracking.completed_steps:
            tracking.completed_steps = sorted({*tracking.completed_steps, index})
        tracking.not_completed_steps = [i for i in tracking.not_completed_steps if i != index]
        self.save(tracking)
        logger.debug(f"Step {index} marked completed")

    def mark_started(self, index: int) -> None:
        tracking = self.load()
        if index not in tracking.not_completed_steps:
            tracking.not_completed_steps = sorted({*tracking.not_completed_steps, index})
            self.save(tracking)

    def set_active_template(self, name: str) -> None:
        """Switch the active template, resetting tracking when it changes."""
        tracking = self.load()
        if tracking.active_template == name:
            return
        if not tracking.active_template:
            tracking.active_template = name
            self.save(tracking)
            return
        logger.info(f"Active template changed from {tracking.active_template!r} to {name!r}")
        self.save(TemplateTracking(active_template=name))

    def clear(self) -> None:
        """Clear completed and not-completed steps, keeping the active template."""
        if not self.path.exists():
            return
        tracking = self.load()
        logger.warning("Clearing step tracking data")
        tracking.completed_steps = []
        tracking.not_completed_steps = []
        self.save(tracking)
