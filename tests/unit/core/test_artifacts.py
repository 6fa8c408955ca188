"""Unit tests for ArtifactStoreClient."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest

from conveyor.artifacts import ArtifactStoreClient, release_key
from conveyor.errors import ProviderUnavailableError
from conveyor.providers.memory import InMemoryArtifactRegistry
from conveyor.resilience import ResilientCaller
from conveyor.schemas.config import RetryConfig
from conveyor.schemas.models import Release

RELEASE = Release.build(revision="c" * 40, ref="refs/tags/v1.0.0", tag="v1.0.0")


def test_release_key() -> None:
    assert release_key("v1.0.0") == "releases/v1.0.0.json"


class TestPublish:
    def test_publish_stores_release_manifest(self) -> None:
        registry = InMemoryArtifactRegistry()
        client = ArtifactStoreClient(registry)

        reference = client.publish(RELEASE)

        stored = registry.get(release_key("v1.0.0"))
        assert stored is not None
        assert Release.model_validate_json(stored) == RELEASE
        assert reference == registry.get_reference(release_key("v1.0.0"))

    @pytest.mark.requirement("artifacts.idempotent-publish")
    def test_publish_twice_returns_same_reference(self) -> None:
        """Publishing the same release id twice yields one stored artifact."""
        registry = InMemoryArtifactRegistry()
        client = ArtifactStoreClient(registry)

        first = client.publish(RELEASE)
        second = client.publish(RELEASE)

        assert first == second
        assert registry.put_calls == 1

    def test_concurrent_publish_writes_once(self) -> None:
        registry = InMemoryArtifactRegistry()
        client = ArtifactStoreClient(registry)
        references: list[str] = []
        lock = threading.Lock()

        def publish() -> None:
            ref = client.publish(RELEASE)
            with lock:
                references.append(ref)

        threads = [threading.Thread(target=publish) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(references)) == 1
        assert registry.put_calls == 1

    def test_transient_registry_failure_retried(self) -> None:
        registry = MagicMock()
        registry.get_reference.side_effect = [ConnectionError("reset"), None]
        registry.put.return_value = "oci://registry/releases@sha256:abc"
        caller = ResilientCaller("registry", RetryConfig(max_attempts=2), sleep=lambda _: None)

        reference = ArtifactStoreClient(registry, caller).publish(RELEASE)

        assert reference == "oci://registry/releases@sha256:abc"
        assert registry.get_reference.call_count == 2

    def test_registry_unavailable_after_retries(self) -> None:
        registry = MagicMock()
        registry.get_reference.return_value = None
        registry.put.side_effect = ConnectionError("refused")
        caller = ResilientCaller("registry", RetryConfig(max_attempts=2), sleep=lambda _: None)

        with pytest.raises(ProviderUnavailableError, match="registry"):
            ArtifactStoreClient(registry, caller).publish(RELEASE)
