"""Build event watcher.

Watches TaskRun events in the build namespace, pushes each container's
build status to the platform and posts backup commit statuses when a
run finishes. One watcher runs per process; it reconnects on its own
after stream errors and only processes events newer than the latest
(re)connect.
"""

import asyncio
import functools
import logging
import threading
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional, Protocol

import httpx
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from fleet.background import TaskSupervisor, get_task_supervisor
from fleet.models import BuildEvent
from fleet.services.commit_status import CommitStatusNotifier
from fleet.settings import Settings, get_settings

logger = logging.getLogger(__name__)

TASK_RUN_FIELD_SELECTOR = "involvedObject.kind=TaskRun"
EVENT_LISTENER_LABEL = "triggers.tekton.dev/eventlistener"

WATCHED_REASONS = frozenset(
    {
        "Started",
        "Running",
        "Succeeded",
        "Failed",
        "Error",
        "TaskRunCancelled",
        "TaskRunTimeout",
        "TaskRunImagePullFailed",
    }
)
TERMINAL_REASONS = WATCHED_REASONS - {"Started", "Running"}


def container_slug(listener_name: Optional[str]) -> Optional[str]:
    """Container slug from an event listener name.

    ``github-listener-lkv0ier4`` -> ``lkv0ier4``. Names with fewer than
    three dash-separated segments belong to no container.
    """
    if not listener_name:
        return None
    parts = listener_name.split("-")
    if len(parts) < 3 or not parts[2]:
        return None
    return parts[2]


def pipeline_status(reason: str) -> str:
    """Status reported to the platform, e.g. TaskRunTimeout -> Timeout."""
    return reason.removeprefix("TaskRun")


# =============================================================================
# KUBERNETES ADAPTERS
# =============================================================================


class EventStream(Protocol):
    def __aiter__(self) -> AsyncIterator[BuildEvent]: ...

    async def aclose(self) -> None: ...


class EventSource(Protocol):
    async def open(self, namespace: str, field_selector: str) -> EventStream: ...


class TaskRunReader(Protocol):
    async def get(self, name: str) -> Optional[dict[str, Any]]: ...


def load_kubernetes_config(kubeconfig_path: str = "") -> None:
    """Load an explicit kubeconfig, else in-cluster config, else the default kubeconfig."""
    if kubeconfig_path:
        config.load_kube_config(config_file=kubeconfig_path)
        return
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def _event_time(event: Any) -> Optional[datetime]:
    return event.last_timestamp or event.first_timestamp or getattr(event, "event_time", None)


class WatchStream:
    """Async iterator over a blocking kubernetes watch.

    Each item is read in the default executor. ``aclose`` shuts down the
    watch's HTTP response, so a read blocked in that executor returns
    instead of waiting for the next event or the server-side timeout.
    """

    _DONE = object()

    def __init__(self, watcher: watch.Watch, list_func: Callable[..., Any], *args: Any, **kwargs: Any):
        self._watch = watcher
        self._lock = threading.Lock()
        self._response = None
        self._closed = False
        self._shut_down = False
        self._events = watcher.stream(self._capture(list_func), *args, **kwargs)

    def _capture(self, list_func: Callable[..., Any]) -> Callable[..., Any]:
        # Watch.stream reads the item type from the wrapped docstring
        @functools.wraps(list_func)
        def call(*args: Any, **kwargs: Any) -> Any:
            response = list_func(*args, **kwargs)
            with self._lock:
                self._response = response
                closed = self._closed
            if closed:
                self._shutdown()
            return response

        return call

    def _shutdown(self) -> None:
        with self._lock:
            if self._response is None or self._shut_down:
                return
            self._shut_down = True
        self._response.shutdown()

    def __aiter__(self) -> "WatchStream":
        return self

    async def __anext__(self) -> BuildEvent:
        loop = asyncio.get_running_loop()
        while True:
            item = await loop.run_in_executor(None, next, self._events, self._DONE)
            if item is self._DONE:
                raise StopAsyncIteration
            obj = item.get("object")
            if obj is None or not obj.involved_object:
                continue
            return BuildEvent(
                reason=obj.reason or "",
                involved_object_name=obj.involved_object.name or "",
                timestamp=_event_time(obj),
            )

    async def aclose(self) -> None:
        with self._lock:
            self._closed = True
        self._watch.stop()
        self._shutdown()


class KubernetesEventSource:
    """Opens watches on namespaced core events.

    The watch request is only sent on the first read, so an unreachable
    API server surfaces as a stream error rather than an open error.
    """

    def __init__(self, kubeconfig_path: str = "", timeout_seconds: int = 3600):
        self.kubeconfig_path = kubeconfig_path
        self.timeout_seconds = timeout_seconds

    async def open(self, namespace: str, field_selector: str) -> WatchStream:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, load_kubernetes_config, self.kubeconfig_path)
        return WatchStream(
            watch.Watch(),
            client.CoreV1Api().list_namespaced_event,
            namespace,
            field_selector=field_selector,
            timeout_seconds=self.timeout_seconds,
        )


class KubernetesTaskRunReader:
    """Reads Tekton TaskRun custom objects."""

    def __init__(
        self,
        namespace: str,
        kubeconfig_path: str = "",
        group: str = "tekton.dev",
        version: str = "v1beta1",
        plural: str = "taskruns",
        api: Optional[client.CustomObjectsApi] = None,
    ):
        self.namespace = namespace
        self.kubeconfig_path = kubeconfig_path
        self.group = group
        self.version = version
        self.plural = plural
        self._api = api

    def _read(self, name: str) -> dict[str, Any]:
        if self._api is None:
            load_kubernetes_config(self.kubeconfig_path)
            self._api = client.CustomObjectsApi()
        return self._api.get_namespaced_custom_object(
            self.group, self.version, self.namespace, self.plural, name
        )

    async def get(self, name: str) -> Optional[dict[str, Any]]:
        """Get a TaskRun, or None if it cannot be read."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._read, name)
        except (ApiException, config.ConfigException) as e:
            logger.error("Cannot get TaskRun %s in namespace %s. %s", name, self.namespace, e)
            return None


# =============================================================================
# PLATFORM TELEMETRY
# =============================================================================


class PlatformTelemetryClient:
    """Pushes container build statuses to the platform's telemetry endpoint."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def post_pipeline_status(self, container_slug: str, status: str) -> bool:
        if not self.settings.platform_url:
            logger.warning("PLATFORM_URL not configured, dropping status of %s", container_slug)
            return False

        url = f"{self.settings.platform_url.rstrip('/')}/v1/telemetry/pipeline/status"
        async with httpx.AsyncClient() as http:
            try:
                response = await http.post(
                    url,
                    headers={
                        "Authorization": self.settings.master_token,
                        "Content-Type": "application/json",
                    },
                    json={"containerSlug": container_slug, "status": status},
                    timeout=30.0,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error(
                    "Cannot send build pipeline run status of container %s to platform. %s",
                    container_slug,
                    e,
                )
                return False
        return True


# =============================================================================
# WATCHER
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BuildEventWatcher:
    """Self-healing subscription to build events.

    ``start`` and ``stop`` are idempotent. Per-event work runs as
    supervised background tasks so the stream keeps being consumed while
    earlier events are still being handled.
    """

    def __init__(
        self,
        source: EventSource,
        task_runs: TaskRunReader,
        telemetry: PlatformTelemetryClient,
        notifier: CommitStatusNotifier,
        tasks: TaskSupervisor,
        *,
        namespace: str = "tekton-builds",
        connect_retry_delay: float = 1.0,
        stream_retry_delay: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.task_runs = task_runs
        self.telemetry = telemetry
        self.notifier = notifier
        self.tasks = tasks
        self.namespace = namespace
        self.connect_retry_delay = connect_retry_delay
        self.stream_retry_delay = stream_retry_delay
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start watching. No-op while a watch is active."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._watch_loop(), name="build-event-watcher"
        )

    async def stop(self) -> None:
        """Stop watching. No-op when not started."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped watching build events.")

    async def _watch_loop(self) -> None:
        while True:
            since = self._clock()
            try:
                stream = await self.source.open(self.namespace, TASK_RUN_FIELD_SELECTOR)
            except Exception as e:
                logger.error("Error while starting the build event watch. %s", e)
                await self._sleep(self.connect_retry_delay)
                continue

            logger.info("Started watching build events...")
            try:
                async for event in stream:
                    self.handle(event, since)
                logger.info("Build event watch closed by the server, reconnecting")
            except Exception as e:
                logger.error("Error while watching for build events. %s", e)
            finally:
                await stream.aclose()

            await self._sleep(self.stream_retry_delay)

    def handle(self, event: BuildEvent, since: datetime) -> bool:
        """Dispatch a qualifying event. Returns whether it was dispatched."""
        if event.reason not in WATCHED_REASONS:
            return False
        if event.timestamp and event.timestamp < since:
            return False

        self.tasks.spawn(self._process(event), name=f"build-event-{event.involved_object_name}")
        return True

    async def _process(self, event: BuildEvent) -> None:
        task_run = await self.task_runs.get(event.involved_object_name)
        if not task_run:
            return

        labels = (task_run.get("metadata") or {}).get("labels") or {}
        slug = container_slug(labels.get(EVENT_LISTENER_LABEL))
        if not slug:
            return

        status = pipeline_status(event.reason)
        logger.info("Updating the build status of container %s. %s", slug, status)
        self.tasks.spawn(
            self.telemetry.post_pipeline_status(slug, status),
            name=f"pipeline-status-{slug}",
        )

        if event.reason in TERMINAL_REASONS:
            params = (task_run.get("spec") or {}).get("params")
            self.tasks.spawn(
                self.notifier.notify(params, event.reason),
                name=f"commit-status-{event.involved_object_name}",
            )


@lru_cache
def get_build_watcher() -> BuildEventWatcher:
    """Get the process-wide build event watcher."""
    settings = get_settings()
    return BuildEventWatcher(
        KubernetesEventSource(settings.kubeconfig_path),
        KubernetesTaskRunReader(settings.build_namespace, settings.kubeconfig_path),
        PlatformTelemetryClient(settings),
        CommitStatusNotifier(settings),
        get_task_supervisor(),
        namespace=settings.build_namespace,
        connect_retry_delay=settings.watch_connect_retry_delay,
        stream_retry_delay=settings.watch_stream_retry_delay,
    )
