"""Exception hierarchy for training-camp.

Only storage failures and caller misuse surface as exceptions. Tool policy
rejections, unregistered tools, tool failures and text-generation outages are
reported as result values so that batches can return partial outcomes.
"""

from __future__ import annotations


class TrainingCampError(Exception):
    """Base class for all training-camp errors."""


class StorageError(TrainingCampError):
    """A backing-store read or write failed. Always fatal to the caller."""


class ConstraintViolation(StorageError):
    """A write was refused because it breaks a storage invariant."""


class DuplicateLineageError(ConstraintViolation):
    """A session already has a lineage with the requested label."""

    def __init__(self, session_id: str, label: str) -> None:
        super().__init__(f"Session {session_id!r} already has a lineage labelled {label!r}")
        self.session_id = session_id
        self.label = label


class VersionConflictError(ConstraintViolation):
    """An agent version was reused, or did not increase, within a lineage."""

    def __init__(self, lineage_id: str, version: int) -> None:
        super().__init__(f"Lineage {lineage_id!r} already has agent version {version}")
        self.lineage_id = lineage_id
        self.version = version


class SpanSequenceError(ConstraintViolation):
    """A span sequence was reused, or its parent is not an earlier span of the same attempt."""


class NotFoundError(TrainingCampError, LookupError):
    """A referenced entity does not exist."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} {entity_id!r} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class OutcomeAlreadyRecordedError(TrainingCampError):
    """An evolution record's outcome is write-once and has already been set."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Evolution record {record_id!r} already has an outcome")
        self.record_id = record_id


class LineageLockedError(TrainingCampError):
    """Evolution was requested for a lineage the user has locked."""

    def __init__(self, lineage_id: str) -> None:
        super().__init__(f"Lineage {lineage_id!r} is locked")
        self.lineage_id = lineage_id


class InvalidFlowError(TrainingCampError, ValueError):
    """An agent definition's flow graph has structural errors."""

    def __init__(self, agent_id: str, errors: list[str]) -> None:
        super().__init__(f"Agent {agent_id!r} has an invalid flow: {'; '.join(errors)}")
        self.agent_id = agent_id
        self.errors = errors
