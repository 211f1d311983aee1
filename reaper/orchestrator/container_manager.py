"""Container teardown against the Docker Engine: find, stop and remove."""

import docker
import requests
from docker.models.containers import Container

from reaper.config import Settings
from reaper.errors import AlreadyRemoved, AlreadyStopped, RuntimeUnavailable

# Transport failures and timeouts surface from requests, not as DockerException
_UNAVAILABLE = (docker.errors.DockerException, requests.exceptions.RequestException)


def build_docker(config: Settings) -> docker.DockerClient:
    """Docker client whose HTTP timeout bounds every engine call."""
    if config.docker_base_url:
        return docker.DockerClient(
            base_url=config.docker_base_url,
            timeout=config.runtime_timeout_seconds,
        )
    return docker.from_env(timeout=config.runtime_timeout_seconds)


def _short(container_id: str) -> str:
    return container_id[:12]


class ContainerRuntime:
    """Look up, stop and remove session containers. Does not retry."""

    def __init__(
        self,
        docker_client: docker.DockerClient,
        stop_timeout_seconds: int = 10,
    ):
        self.client = docker_client
        self.stop_timeout_seconds = stop_timeout_seconds

    def find(self, container_id: str) -> Container | None:
        """Return the container, or None if the engine does not know it."""
        try:
            return self.client.containers.get(container_id)
        except docker.errors.NotFound:
            return None
        except _UNAVAILABLE as e:
            raise RuntimeUnavailable(f"find {_short(container_id)}: {e}") from e

    def stop(self, container: Container) -> None:
        """Stop gracefully; the engine kills after stop_timeout_seconds."""
        try:
            container.stop(timeout=self.stop_timeout_seconds)
        except docker.errors.NotFound as e:
            raise AlreadyStopped(_short(container.id)) from e
        except _UNAVAILABLE as e:
            raise RuntimeUnavailable(f"stop {_short(container.id)}: {e}") from e

    def remove(self, container: Container, force: bool = False) -> None:
        try:
            container.remove(force=force)
        except docker.errors.NotFound as e:
            raise AlreadyRemoved(_short(container.id)) from e
        except docker.errors.APIError as e:
            # 409: another remove of the same container is in flight
            if e.status_code == 409 and "already in progress" in str(e.explanation or ""):
                raise AlreadyRemoved(_short(container.id)) from e
            raise RuntimeUnavailable(f"remove {_short(container.id)}: {e}") from e
        except _UNAVAILABLE as e:
            raise RuntimeUnavailable(f"remove {_short(container.id)}: {e}") from e
