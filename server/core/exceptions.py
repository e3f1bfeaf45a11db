"""Base exception types shared across services and routers."""


class NotFoundError(LookupError):
    """An id-addressed entity (workflow, execution, job, DLQ entry) does not exist.

    Kept distinct from transient failures so callers (HTTP layer, recovery
    sweeps) can tell "doesn't exist" apart from "try again".
    """

    entity: str = "Entity"

    def __init__(self, entity_id: str, message: str = None):
        self.entity_id = entity_id
        super().__init__(message or f"{self.entity} {entity_id} not found")
