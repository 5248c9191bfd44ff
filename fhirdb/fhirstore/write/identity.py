"""
Identity resolution for resource writes.

Create (POST) uses a server-controlled id unless an upstream bundle
processor already assigned one while resolving internal references.
Update-or-create (PUT) always uses the client-supplied id.
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from ..errors import InvalidRequestError
from .meta import Resource, resource_type_of

logger = logging.getLogger(__name__)


def generate_resource_id() -> str:
    """New server-controlled id (random UUID, not checked against the store)."""
    return str(uuid.uuid4())


def _present(value: object) -> bool:
    return isinstance(value, str) and value.strip() != ""


class IdentityResolver:
    """Decides the effective id of a resource being written.

    Example:
        >>> resolver = IdentityResolver()
        >>> patient = {"resourceType": "Patient"}
        >>> rid = resolver.resolve_for_create(patient)
        >>> patient["id"] == rid
        True
    """

    def __init__(self, id_factory: Callable[[], str] = generate_resource_id) -> None:
        self._id_factory = id_factory

    def resolve_for_create(self, resource: Resource) -> str:
        """Keep a pre-assigned id, otherwise generate one and stamp it."""
        resource_type = resource_type_of(resource)
        existing = resource.get("id")
        if _present(existing):
            logger.info(
                "Using pre-assigned id",
                extra={"resource_type": resource_type, "resource_id": existing},
            )
            return existing

        resource_id = self._id_factory()
        resource["id"] = resource_id
        logger.info(
            "Generated server id",
            extra={"resource_type": resource_type, "resource_id": resource_id},
        )
        return resource_id

    def resolve_for_update(self, resource: Resource) -> str:
        """Return the client-supplied id.

        Raises:
            InvalidRequestError: If the id is absent or blank
        """
        resource_type = resource_type_of(resource)
        client_id = resource.get("id")
        if not _present(client_id):
            raise InvalidRequestError(
                "PUT operation requires a client-supplied ID",
                resource_type=resource_type,
            )
        return client_id
