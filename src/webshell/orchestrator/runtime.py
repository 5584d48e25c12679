"""Runtime adapter over the Docker Engine API.

Translates orchestration requests into docker SDK calls: create/start/stop/
remove session containers, attach to their TTY byte stream, enumerate what the
daemon is actually running, fetch stats and build profile images.

The docker SDK is blocking, so every call runs in a worker thread via
asyncio.to_thread. The adapter keeps no per-session state between calls;
handles belong to the sessions that own them.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Protocol, cast

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.models.images import Image
from requests.exceptions import RequestException

from webshell.common import settings
from webshell.common.catalog import DEFAULT_CATALOG, EnvironmentCatalog, Profile, ResourceLimits
from webshell.common.errors import (
    BuildFailed,
    HandleClosed,
    ProfileNotFound,
    ResourceExhausted,
    RuntimeAdapterError,
    RuntimeUnavailable,
)

logger = logging.getLogger(__name__)

MANAGED_BY = "web-shell"
LABEL_MANAGED = "managed-by"
LABEL_SESSION = "web-shell.session"
LABEL_USER = "web-shell.user"
LABEL_ENVIRONMENT = "web-shell.environment"

CONTAINER_PREFIX = "web-shell-session-"
READ_CHUNK_SIZE = 4096

SHELL_PATHS = {
    "bash": "/bin/bash",
    "zsh": "/bin/zsh",
}

# Docker volume names: [a-zA-Z0-9][a-zA-Z0-9_.-]* and max 255 chars
VOLUME_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
VOLUME_NAME_MAX_LENGTH = 255

# Substrings of daemon errors that mean the host is out of capacity
CAPACITY_MARKERS = (
    "no space left",
    "cannot allocate memory",
    "out of memory",
    "resource temporarily unavailable",
    "insufficient",
)

ProgressCallback = Callable[[dict[str, Any]], None]


def container_name(session_id: str) -> str:
    return f"{CONTAINER_PREFIX}{session_id}"


def validate_volume_name(name: str) -> tuple[bool, str]:
    """Validate a Docker volume name.

    Returns:
        Tuple of (is_valid, error_message). error_message is empty if valid.
    """
    if not name:
        return False, "Volume name cannot be empty"
    if len(name) > VOLUME_NAME_MAX_LENGTH:
        return False, f"Volume name exceeds {VOLUME_NAME_MAX_LENGTH} characters"
    if not VOLUME_NAME_PATTERN.match(name):
        return (
            False,
            "Volume name must start with alphanumeric and contain only alphanumeric, underscore, dot, or dash",
        )
    return True, ""


def workspace_volume_name(user_id: str, environment: str) -> str:
    """Name of the persistent workspace volume for a user and profile."""
    safe_user = re.sub(r"[^a-zA-Z0-9_.-]", "-", user_id).strip("-._") or "user"
    return f"web-shell-{safe_user}-{environment}"[:VOLUME_NAME_MAX_LENGTH]


def translate_docker_error(error: Exception, action: str) -> RuntimeAdapterError:
    """Map a docker SDK / transport exception onto the adapter error taxonomy."""
    if isinstance(error, RuntimeAdapterError):
        return error
    if isinstance(error, ImageNotFound):
        return ProfileNotFound(f"{action}: image not found ({error.explanation})")
    if isinstance(error, APIError):
        text = str(error.explanation or error)
        if any(marker in text.lower() for marker in CAPACITY_MARKERS):
            return ResourceExhausted(f"{action}: {text}")
        return RuntimeAdapterError(f"{action}: {text}")
    return RuntimeUnavailable(f"{action}: {error}")


class ExecutionHandle(Protocol):
    """Capability set of a running isolated environment.

    Iterating ``output()`` yields the environment's byte stream in order;
    exhaustion of the iterator is the end-of-stream signal.
    """

    runtime_id: str
    name: str
    limits: ResourceLimits

    @property
    def closed(self) -> bool: ...

    async def write(self, data: bytes) -> None: ...

    async def resize(self, cols: int, rows: int) -> None: ...

    def output(self) -> AsyncIterator[bytes]: ...

    def close(self) -> None: ...


@dataclass
class RunningEnvironment:
    """A managed container as reported by the runtime."""

    runtime_id: str
    name: str
    status: str
    session_id: str | None = None
    user_id: str | None = None
    environment: str | None = None
    image: str | None = None
    created_at: str | None = None

    @classmethod
    def from_container(cls, container: Container) -> "RunningEnvironment":
        labels = container.labels or {}
        attrs = container.attrs or {}
        tags = container.image.tags if container.image is not None else []
        return cls(
            runtime_id=cast(str, container.id),
            name=container.name or "unknown",
            status=container.status,
            session_id=labels.get(LABEL_SESSION),
            user_id=labels.get(LABEL_USER),
            environment=labels.get(LABEL_ENVIRONMENT),
            image=tags[0] if tags else None,
            created_at=attrs.get("Created"),
        )


class RuntimeAdapter(Protocol):
    """What the registry, reconciler and monitor need from a runtime."""

    async def materialize(
        self,
        profile: str,
        limits: ResourceLimits | None = None,
        *,
        session_id: str,
        user_id: str,
        shell: str = "bash",
        cols: int = 80,
        rows: int = 24,
    ) -> ExecutionHandle: ...

    async def destroy(self, handle: ExecutionHandle, *, session_id: str | None = None) -> bool: ...

    async def destroy_container(self, runtime_id: str) -> bool: ...

    async def list_running(self) -> list[RunningEnvironment]: ...

    async def stats(self, runtime_id: str) -> dict[str, Any]: ...

    async def ping(self) -> bool: ...

    async def prepare(self) -> list[str]: ...

    async def info(self) -> dict[str, Any]: ...

    async def list_images(self) -> list[str]: ...

    async def image_status(self, profile: str) -> dict[str, Any]: ...

    async def image_exists(self, profile: str) -> bool: ...

    async def build_image(self, profile: str, on_progress: ProgressCallback | None = None) -> None: ...


class DockerExecutionHandle:
    """Session container plus its attached TTY socket."""

    def __init__(
        self,
        container: Container,
        sock: Any,
        limits: ResourceLimits,
        chunk_size: int = READ_CHUNK_SIZE,
    ):
        self.container = container
        self.runtime_id = cast(str, container.id)
        self.name = container.name or container_name(self.runtime_id[:12])
        self.limits = limits
        self._sock = sock
        # attach_socket returns a SocketIO wrapper; raw send/recv need the socket
        self._raw = getattr(sock, "_sock", sock)
        self._chunk_size = chunk_size
        self._ended = False

    @property
    def closed(self) -> bool:
        return self._ended

    async def write(self, data: bytes) -> None:
        if self._ended:
            raise HandleClosed(f"Stream for {self.name} has ended")
        try:
            await asyncio.to_thread(self._raw.sendall, data)
        except OSError as e:
            self._ended = True
            raise HandleClosed(f"Stream for {self.name} has ended: {e}") from e

    async def resize(self, cols: int, rows: int) -> None:
        if self._ended:
            raise HandleClosed(f"Stream for {self.name} has ended")
        try:
            await asyncio.to_thread(self.container.resize, height=rows, width=cols)
        except NotFound as e:
            self._ended = True
            raise HandleClosed(f"Container {self.name} is gone") from e
        except APIError as e:
            if e.status_code == 409 or "not running" in str(e.explanation or "").lower():
                self._ended = True
                raise HandleClosed(f"Container {self.name} is not running") from e
            raise translate_docker_error(e, f"resize {self.name}") from e
        except RequestException as e:
            raise translate_docker_error(e, f"resize {self.name}") from e

    async def output(self) -> AsyncIterator[bytes]:
        while not self._ended:
            try:
                chunk = await asyncio.to_thread(self._raw.recv, self._chunk_size)
            except OSError as e:
                logger.debug(f"Attach stream for {self.name} failed: {e}")
                chunk = b""
            if not chunk:
                break
            yield chunk
        self._ended = True

    def close(self) -> None:
        self._ended = True
        try:
            self._raw.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._sock.close()
        except OSError:
            pass


class DockerRuntime:
    """RuntimeAdapter backed by a local or proxied Docker daemon."""

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        catalog: EnvironmentCatalog = DEFAULT_CATALOG,
        docker_host: str = settings.DOCKER_HOST,
        timeout: int = settings.DOCKER_TIMEOUT,
        network: str = settings.CONTAINER_NETWORK,
        persistent_workspaces: bool = settings.PERSISTENT_WORKSPACES,
        workspace_path: str = settings.WORKSPACE_PATH,
        stop_timeout: int = settings.STOP_TIMEOUT,
        build_context: Path = settings.BUILD_CONTEXT_DIR,
        dockerfile: str = settings.DOCKERFILE,
    ):
        self._client = client
        self._client_lock = threading.Lock()
        self.catalog = catalog
        self.docker_host = docker_host
        self.timeout = timeout
        self.network = network
        self.persistent_workspaces = persistent_workspaces
        self.workspace_path = workspace_path
        self.stop_timeout = stop_timeout
        self.build_context = Path(build_context)
        self.dockerfile = dockerfile

    @property
    def client(self) -> docker.DockerClient:
        with self._client_lock:
            if self._client is None:
                try:
                    self._client = docker.DockerClient(
                        base_url=self.docker_host, timeout=self.timeout
                    )
                except DockerException as e:
                    raise RuntimeUnavailable(
                        f"Cannot connect to Docker at {self.docker_host}: {e}"
                    ) from e
                logger.info(f"Connected to Docker daemon at {self.docker_host}")
            return self._client

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def ping(self) -> bool:
        def _ping() -> bool:
            try:
                return bool(self.client.ping())
            except (DockerException, RequestException, RuntimeUnavailable) as e:
                logger.error(f"Docker connection failed: {e}")
                return False

        return await asyncio.to_thread(_ping)

    async def info(self) -> dict[str, Any]:
        def _info() -> dict[str, Any]:
            try:
                return self.client.info()
            except (DockerException, RequestException) as e:
                raise translate_docker_error(e, "info") from e

        return await asyncio.to_thread(_info)

    async def prepare(self) -> list[str]:
        """Startup housekeeping: ensure the network and drop exited containers."""

        def _prepare() -> list[str]:
            if self.network:
                try:
                    self._ensure_network()
                except (DockerException, RequestException) as e:
                    raise translate_docker_error(e, f"network {self.network}") from e
            return self._remove_exited()

        return await asyncio.to_thread(_prepare)

    def _ensure_network(self) -> None:
        try:
            self.client.networks.get(self.network)
            logger.info(f"Using existing network: {self.network}")
        except NotFound:
            # Sessions must not reach each other
            self.client.networks.create(
                self.network,
                driver="bridge",
                options={"com.docker.network.bridge.enable_icc": "false"},
                labels={LABEL_MANAGED: MANAGED_BY},
            )
            logger.info(f"Created network: {self.network} (ICC disabled)")

    def _remove_exited(self) -> list[str]:
        removed: list[str] = []
        try:
            containers = cast(
                list[Container],
                self.client.containers.list(
                    all=True,
                    filters={"label": f"{LABEL_MANAGED}={MANAGED_BY}", "status": "exited"},
                ),
            )
        except (DockerException, RequestException) as e:
            logger.error(f"Error listing containers for cleanup: {e}")
            return removed

        for container in containers:
            try:
                container.remove()
                removed.append(container.name or "unknown")
                logger.info(f"Cleaned up exited container: {container.name}")
            except APIError as e:
                logger.warning(f"Failed to remove exited container {container.name}: {e}")
        return removed

    # -------------------------------------------------------------------------
    # Session containers
    # -------------------------------------------------------------------------

    async def materialize(
        self,
        profile: str,
        limits: ResourceLimits | None = None,
        *,
        session_id: str,
        user_id: str,
        shell: str = "bash",
        cols: int = 80,
        rows: int = 24,
    ) -> DockerExecutionHandle:
        """Create, attach to and start a session container.

        The attach happens before start so no early output (the first prompt)
        is lost. Any failure after the container exists removes it again.
        """
        resolved = self.catalog.get(profile)
        return await asyncio.to_thread(
            self._materialize,
            resolved,
            limits or resolved.limits,
            session_id,
            user_id,
            shell,
            cols,
            rows,
        )

    def _materialize(
        self,
        profile: Profile,
        limits: ResourceLimits,
        session_id: str,
        user_id: str,
        shell: str,
        cols: int,
        rows: int,
    ) -> DockerExecutionHandle:
        name = container_name(session_id)
        environment = {
            "TERM": "xterm-256color",
            "ENVIRONMENT": profile.name,
            "USER_ID": user_id,
            "SESSION_ID": session_id,
            "COLUMNS": str(cols),
            "LINES": str(rows),
        }

        container: Container | None = None
        sock = None
        try:
            volumes = {}
            if self.persistent_workspaces:
                volume = workspace_volume_name(user_id, profile.name)
                self._ensure_volume(volume, user_id)
                volumes[volume] = {"bind": self.workspace_path, "mode": "rw"}

            container = cast(
                Container,
                self.client.containers.create(
                    profile.image,
                    command=[SHELL_PATHS.get(shell, f"/bin/{shell}")],
                    name=name,
                    tty=True,
                    stdin_open=True,
                    environment=environment,
                    working_dir=self.workspace_path,
                    volumes=volumes,
                    network=self.network or None,
                    labels={
                        LABEL_MANAGED: MANAGED_BY,
                        LABEL_SESSION: session_id,
                        LABEL_USER: user_id,
                        LABEL_ENVIRONMENT: profile.name,
                    },
                    security_opt=["no-new-privileges:true"],
                    mem_limit=limits.memory,
                    nano_cpus=limits.nano_cpus,
                    pids_limit=limits.pids,
                ),
            )
            sock = container.attach_socket(
                params={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1}
            )
            container.start()
        except (DockerException, RequestException, RuntimeUnavailable) as e:
            logger.error(f"Failed to create session container {name}: {e}")
            if sock is not None:
                try:
                    sock.close()
                except OSError:
                    pass
            if container is not None:
                self._remove_container(cast(str, container.id), session_id)
            raise translate_docker_error(e, f"create {profile.name} environment") from e

        try:
            container.resize(height=rows, width=cols)
        except (APIError, RequestException) as e:
            logger.debug(f"Initial resize of {name} failed: {e}")

        logger.info(
            f"Created container {name} ({container.short_id}) for user {user_id} "
            f"[{profile.name}, cpus={limits.cpus}, memory={limits.memory}, pids={limits.pids}]"
        )
        return DockerExecutionHandle(container, sock, limits)

    def _ensure_volume(self, volume_name: str, user_id: str) -> None:
        is_valid, error_msg = validate_volume_name(volume_name)
        if not is_valid:
            raise RuntimeAdapterError(f"Invalid volume name {volume_name!r}: {error_msg}")
        try:
            self.client.volumes.get(volume_name)
            logger.debug(f"Volume {volume_name} already exists")
        except NotFound:
            self.client.volumes.create(
                name=volume_name,
                labels={LABEL_MANAGED: MANAGED_BY, LABEL_USER: user_id, "web-shell.persistent": "true"},
            )
            logger.info(f"Created volume {volume_name}")

    async def write(self, handle: ExecutionHandle, data: bytes) -> None:
        await handle.write(data)

    async def resize(self, handle: ExecutionHandle, cols: int, rows: int) -> None:
        await handle.resize(cols, rows)

    async def destroy(self, handle: ExecutionHandle, *, session_id: str | None = None) -> bool:
        """Close the stream, then stop and remove the container. Never raises."""
        handle.close()
        return await asyncio.to_thread(self._remove_container, handle.runtime_id, session_id)

    async def destroy_container(self, runtime_id: str) -> bool:
        """Stop and remove a container by id, regardless of session ownership."""
        return await asyncio.to_thread(self._remove_container, runtime_id, None)

    def _remove_container(self, runtime_id: str, session_id: str | None) -> bool:
        """Stop and remove a container. Returns True if it was removed."""
        try:
            container = cast(Container, self.client.containers.get(runtime_id))
            try:
                container.stop(timeout=self.stop_timeout)
            except APIError as e:
                logger.debug(f"Stop of {container.name} failed, removing anyway: {e}")
            container.remove(force=True)
            logger.info(f"Stopped and removed container: {container.name}")
            return True
        except NotFound:
            logger.debug(f"Container already gone: {runtime_id}")
            return False
        except (DockerException, RequestException, RuntimeUnavailable) as e:
            logger.error(
                f"Failed to destroy container session={session_id} container={runtime_id}: {e}",
                extra={"session_id": session_id, "runtime_id": runtime_id, "cause": str(e)},
            )
            return False

    async def list_running(self) -> list[RunningEnvironment]:
        """Managed containers the daemon reports as running."""

        def _list() -> list[RunningEnvironment]:
            try:
                containers = cast(
                    list[Container],
                    self.client.containers.list(
                        filters={"label": f"{LABEL_MANAGED}={MANAGED_BY}", "status": "running"}
                    ),
                )
            except (DockerException, RequestException) as e:
                raise translate_docker_error(e, "list containers") from e
            return [RunningEnvironment.from_container(c) for c in containers]

        return await asyncio.to_thread(_list)

    async def stats(self, runtime_id: str) -> dict[str, Any]:
        """One-shot raw stats snapshot for a container."""

        def _stats() -> dict[str, Any]:
            try:
                container = cast(Container, self.client.containers.get(runtime_id))
                return cast(dict[str, Any], container.stats(stream=False))
            except (DockerException, RequestException) as e:
                raise translate_docker_error(e, f"stats {runtime_id[:12]}") from e

        return await asyncio.to_thread(_stats)

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    def source_hash(self) -> str:
        """Hash of the Dockerfile, used to detect outdated images."""
        dockerfile_path = self.build_context / self.dockerfile
        if not dockerfile_path.exists():
            return ""
        return hashlib.sha256(dockerfile_path.read_bytes()).hexdigest()[:12]

    async def list_images(self) -> list[str]:
        def _list() -> list[str]:
            try:
                images = cast(list[Image], self.client.images.list())
            except (DockerException, RequestException, RuntimeUnavailable) as e:
                logger.error(f"Failed to list images: {e}")
                return []
            prefix = f"{settings.IMAGE_PREFIX}:"
            return sorted(
                tag for image in images for tag in image.tags if tag.startswith(prefix)
            )

        return await asyncio.to_thread(_list)

    async def image_status(self, profile: str) -> dict[str, Any]:
        """Whether the profile's image exists and was built from the current Dockerfile."""
        resolved = self.catalog.get(profile)

        def _status() -> dict[str, Any]:
            source_hash = self.source_hash()
            try:
                image = cast(Image, self.client.images.get(resolved.image))
            except ImageNotFound:
                return {"image": resolved.image, "exists": False, "outdated": False}
            except (DockerException, RequestException) as e:
                raise translate_docker_error(e, f"inspect {resolved.image}") from e
            image_hash = (image.labels or {}).get("source-hash", "")
            return {
                "image": resolved.image,
                "exists": True,
                "outdated": bool(source_hash and image_hash != source_hash),
            }

        return await asyncio.to_thread(_status)

    async def image_exists(self, profile: str) -> bool:
        status = await self.image_status(profile)
        return status["exists"]

    async def build_image(self, profile: str, on_progress: ProgressCallback | None = None) -> None:
        """Build the profile's image target.

        ``on_progress`` is invoked from the worker thread for every decoded
        build-log chunk.
        """
        resolved = self.catalog.get(profile)
        await asyncio.to_thread(self._build_image, resolved, on_progress)

    def _build_image(self, profile: Profile, on_progress: ProgressCallback | None) -> None:
        dockerfile_path = self.build_context / self.dockerfile
        if not dockerfile_path.exists():
            raise BuildFailed(f"Dockerfile not found: {dockerfile_path}")

        source_hash = self.source_hash()
        logger.info(f"Building {profile.image} from {dockerfile_path} (hash: {source_hash})...")

        labels = {LABEL_MANAGED: MANAGED_BY}
        if source_hash:
            labels["source-hash"] = source_hash

        try:
            for chunk in self.client.api.build(
                path=str(self.build_context),
                dockerfile=self.dockerfile,
                tag=profile.image,
                target=profile.build_target,
                buildargs={"ENVIRONMENT": profile.name},
                labels=labels,
                rm=True,
                decode=True,
            ):
                if on_progress is not None:
                    on_progress(chunk)
                if "error" in chunk:
                    detail = chunk.get("errorDetail") or {}
                    raise BuildFailed(str(detail.get("message") or chunk["error"]).strip())
                line = str(chunk.get("stream", "")).strip()
                if line:
                    logger.debug(f"  {line}")
        except BuildFailed as e:
            logger.error(f"Build failed for {profile.image}: {e}")
            raise
        except APIError as e:
            logger.error(f"Build failed for {profile.image}: {e}")
            raise BuildFailed(str(e.explanation or e)) from e
        except (DockerException, RequestException) as e:
            raise translate_docker_error(e, f"build {profile.image}") from e

        logger.info(f"Successfully built image: {profile.image}")
