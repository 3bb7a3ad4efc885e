"""Exceptions raised by the ranking engine."""


class RankingError(Exception):
    """Base class for ranking engine errors."""


class RankingJobError(RankingError):
    """A ranking run failed as a whole; no stats were produced."""

    def __init__(self, entity_class: str, stage: str, message: str):
        self.entity_class = entity_class
        self.stage = stage
        super().__init__(f"{entity_class} ranking failed during {stage}: {message}")


class RunInProgressError(RankingError):
    """A run for the same entity class is already executing in this process."""

    def __init__(self, entity_class: str):
        self.entity_class = entity_class
        super().__init__(f"A {entity_class} ranking run is already in progress")


class StorageUnavailableError(RankingError):
    """Storage could not be reached, even after retries."""


class EntityNotFoundError(RankingError):
    """An update matched no row (entity deleted since signals were read)."""

    def __init__(self, entity_class: str, entity_id: int):
        self.entity_class = entity_class
        self.entity_id = entity_id
        super().__init__(f"{entity_class} {entity_id} not found")
