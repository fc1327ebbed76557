from enum import Enum


class SurveyStatus(str, Enum):
    """Survey lifecycle as reported by the survey engine."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CLOSED = "CLOSED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"

    def __str__(self) -> str:
        return self.value
