"""Artifact Store Client: publish Release records to the artifact registry.

Publishing is idempotent per release id. The first publish stores the
Release as JSON under ``releases/<release_id>.json``; later publishes of the
same id return the existing reference without writing.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import structlog

from conveyor.resilience import ResilientCaller
from conveyor.telemetry.tracing import create_span

if TYPE_CHECKING:
    from conveyor.providers.base import ArtifactRegistry
    from conveyor.schemas.models import Release

logger = structlog.get_logger(__name__)

RELEASE_KEY_TEMPLATE = "releases/{release_id}.json"


def release_key(release_id: str) -> str:
    """Registry key for a release id."""
    return RELEASE_KEY_TEMPLATE.format(release_id=release_id)


class ArtifactStoreClient:
    """Publishes releases through a registry with retry and circuit breaking.

    Example:
        >>> client = ArtifactStoreClient(InMemoryArtifactRegistry())
        >>> ref = client.publish(release)
        >>> client.publish(release) == ref
        True
    """

    def __init__(self, registry: ArtifactRegistry, caller: ResilientCaller | None = None) -> None:
        self._registry = registry
        self._caller = caller or ResilientCaller("registry")
        self._publish_lock = threading.Lock()

    def publish(self, release: Release) -> str:
        """Store the release and return its stored reference.

        Raises:
            ProviderUnavailableError: If the registry stays unavailable after retries.
        """
        key = release_key(release.release_id)
        with create_span(
            "conveyor.artifacts.publish",
            attributes={"release_id": release.release_id, "digest": release.digest},
        ) as span:
            # Serialized so two runs publishing the same id cannot both write.
            with self._publish_lock:
                existing = self._caller.call(self._registry.get_reference, key)
                if existing is not None:
                    span.set_attribute("already_published", True)
                    logger.info(
                        "release_already_published",
                        release_id=release.release_id,
                        reference=existing,
                    )
                    return existing

                data = release.model_dump_json().encode()
                reference = self._caller.call(self._registry.put, key, data)

            span.set_attribute("already_published", False)
            logger.info(
                "release_published",
                release_id=release.release_id,
                digest=release.digest,
                reference=reference,
            )
            return reference


__all__: list[str] = ["ArtifactStoreClient", "release_key"]
