from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, List, Optional


class PrevizError(Exception):
    """Base class for every error raised by the production core."""


class ValidationError(PrevizError, ValueError):
    pass


class NotFoundError(PrevizError, LookupError):
    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(PrevizError):
    pass


class UpstreamServiceError(PrevizError):
    """
    An external collaborator failed or returned something unusable.
    `service` names the collaborator (segmentation, image_generation, ...).
    """

    def __init__(self, service: str, message: str, actor_id: Optional[int] = None):
        super().__init__(f"[{service}] {message}")
        self.service = service
        self.message = message
        self.actor_id = actor_id


class PartialBatchFailure(PrevizError):
    def __init__(self, results: List[Any]):
        failed = [r for r in results if not r.success]
        super().__init__(f"{len(failed)} of {len(results)} batch items failed")
        self.results = results
        self.failed = failed


@contextmanager
def upstream(service: str) -> Iterator[None]:
    """Re-raise any collaborator exception as UpstreamServiceError tagged with `service`."""
    try:
        yield
    except UpstreamServiceError:
        raise
    except Exception as e:
        raise UpstreamServiceError(service, str(e) or type(e).__name__) from e
