"""Tests for the build event watcher."""

from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Optional, Union
from unittest.mock import Mock

import pytest
import respx
from httpx import Response
from kubernetes import client
from kubernetes.client.rest import ApiException

from fleet.background import TaskSupervisor
from fleet.models import BuildEvent
from fleet.services import build_watcher
from fleet.services.build_watcher import (
    TASK_RUN_FIELD_SELECTOR,
    BuildEventWatcher,
    KubernetesEventSource,
    KubernetesTaskRunReader,
    PlatformTelemetryClient,
    WatchStream,
    container_slug,
    pipeline_status,
)
from fleet.settings import Settings

T0 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
PARAMS = [{"name": "githubpat", "value": "gh-token"}, {"name": "gitrevision", "value": "abc123"}]


def event(reason: str, seconds: float = 1, name: str = "build-run-1") -> BuildEvent:
    return BuildEvent(
        reason=reason, involved_object_name=name, timestamp=T0 + timedelta(seconds=seconds)
    )


def task_run(listener: Optional[str] = "github-listener-lkv0ier4") -> dict[str, Any]:
    labels = {"triggers.tekton.dev/eventlistener": listener} if listener else {}
    return {"metadata": {"name": "build-run-1", "labels": labels}, "spec": {"params": PARAMS}}


class FakeStream:
    """Yields its events, then raises ``error``, ends, or blocks until cancelled."""

    def __init__(self, events: list[BuildEvent], error: Optional[Exception] = None, block: bool = True):
        self.events = events
        self.error = error
        self.block = block
        self.exhausted = asyncio.Event()
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for item in self.events:
            yield item
        self.exhausted.set()
        if self.error:
            raise self.error
        if self.block:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


class FakeSource:
    def __init__(self, outcomes: list[Union[FakeStream, Exception]]):
        self.outcomes = list(outcomes)
        self.opens: list[tuple[str, str]] = []

    async def open(self, namespace: str, field_selector: str) -> FakeStream:
        self.opens.append((namespace, field_selector))
        if not self.outcomes:
            await asyncio.Event().wait()
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeTaskRuns:
    def __init__(self, runs: Optional[dict[str, dict[str, Any]]] = None):
        self.runs = runs if runs is not None else {"build-run-1": task_run()}

    async def get(self, name: str) -> Optional[dict[str, Any]]:
        return self.runs.get(name)


class FakeTelemetry:
    def __init__(self):
        self.posts: list[tuple[str, str]] = []

    async def post_pipeline_status(self, slug: str, status: str) -> bool:
        self.posts.append((slug, status))
        return True


class FakeNotifier:
    def __init__(self):
        self.notified: list[tuple[Any, str]] = []

    async def notify(self, params, reason: str) -> bool:
        self.notified.append((params, reason))
        return True


class FakeClock:
    """Returns the given times in order, then keeps returning the last one."""

    def __init__(self, *times: datetime):
        self.times = list(times)

    def __call__(self) -> datetime:
        return self.times.pop(0) if len(self.times) > 1 else self.times[0]


class Harness:
    def __init__(self, outcomes: list[Union[FakeStream, Exception]], clock: FakeClock):
        self.source = FakeSource(outcomes)
        self.task_runs = FakeTaskRuns()
        self.telemetry = FakeTelemetry()
        self.notifier = FakeNotifier()
        self.tasks = TaskSupervisor()
        self.sleeps: list[float] = []
        self.watcher = BuildEventWatcher(
            self.source,
            self.task_runs,
            self.telemetry,
            self.notifier,
            self.tasks,
            namespace="builds",
            clock=clock,
            sleep=self._sleep,
        )

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        await asyncio.sleep(0)

    async def settle(self) -> None:
        await self.watcher.stop()
        await self.tasks.drain()


@pytest.fixture
def harness() -> Harness:
    return Harness([], FakeClock(T0))


# =============================================================================
# PURE HELPERS
# =============================================================================


@pytest.mark.parametrize(
    "name, expected",
    [
        ("github-listener-lkv0ier4", "lkv0ier4"),
        ("gitlab-listener-abc123-extra", "abc123"),
        ("github-listener", None),
        ("github-listener-", None),
        ("", None),
        (None, None),
    ],
)
def test_container_slug(name: Optional[str], expected: Optional[str]) -> None:
    assert container_slug(name) == expected


@pytest.mark.parametrize(
    "reason, expected",
    [
        ("Succeeded", "Succeeded"),
        ("TaskRunTimeout", "Timeout"),
        ("TaskRunCancelled", "Cancelled"),
        ("TaskRunImagePullFailed", "ImagePullFailed"),
    ],
)
def test_pipeline_status(reason: str, expected: str) -> None:
    assert pipeline_status(reason) == expected


# =============================================================================
# EVENT HANDLING
# =============================================================================


async def test_stale_and_unwatched_events_are_dropped(harness: Harness) -> None:
    assert harness.watcher.handle(event("Succeeded", seconds=-1), T0) is False
    assert harness.watcher.handle(event("Scheduled"), T0) is False
    assert harness.tasks.pending == 0


async def test_event_without_timestamp_is_dispatched(harness: Harness) -> None:
    fresh = BuildEvent(reason="Running", involved_object_name="build-run-1")

    assert harness.watcher.handle(fresh, T0) is True
    await harness.tasks.drain()

    assert harness.telemetry.posts == [("lkv0ier4", "Running")]


@pytest.mark.parametrize(
    "reason", ["Succeeded", "Failed", "Error", "TaskRunCancelled", "TaskRunTimeout", "TaskRunImagePullFailed"]
)
async def test_terminal_event_posts_status_and_commit_status(harness: Harness, reason: str) -> None:
    harness.watcher.handle(event(reason), T0)
    await harness.tasks.drain()

    assert harness.telemetry.posts == [("lkv0ier4", pipeline_status(reason))]
    assert harness.notifier.notified == [(PARAMS, reason)]


@pytest.mark.parametrize("reason", ["Started", "Running"])
async def test_progress_event_posts_status_only(harness: Harness, reason: str) -> None:
    harness.watcher.handle(event(reason), T0)
    await harness.tasks.drain()

    assert harness.telemetry.posts == [("lkv0ier4", reason)]
    assert harness.notifier.notified == []


@pytest.mark.parametrize(
    "runs",
    [{}, {"build-run-1": task_run(listener=None)}, {"build-run-1": task_run("github-listener")}],
)
async def test_run_without_container_has_no_side_effects(harness: Harness, runs) -> None:
    harness.task_runs.runs = runs

    harness.watcher.handle(event("Failed"), T0)
    await harness.tasks.drain()

    assert harness.telemetry.posts == []
    assert harness.notifier.notified == []


async def test_failing_side_effect_does_not_reach_watcher(harness: Harness) -> None:
    async def broken(slug: str, status: str) -> bool:
        raise RuntimeError("platform down")

    harness.telemetry.post_pipeline_status = broken

    harness.watcher.handle(event("Succeeded"), T0)
    await harness.tasks.drain()

    assert harness.notifier.notified == [(PARAMS, "Succeeded")]


# =============================================================================
# LIFECYCLE
# =============================================================================


async def test_stop_without_start_is_noop(harness: Harness) -> None:
    await harness.watcher.stop()

    assert harness.watcher.running is False


async def test_start_is_idempotent(harness: Harness) -> None:
    harness.watcher.start()
    task = harness.watcher._task
    harness.watcher.start()
    await asyncio.sleep(0)

    assert harness.watcher._task is task
    assert harness.watcher.running is True
    assert harness.source.opens == [("builds", TASK_RUN_FIELD_SELECTOR)]

    await harness.watcher.stop()
    await harness.watcher.stop()
    assert harness.watcher.running is False


async def test_reconnects_once_after_stream_error() -> None:
    first = FakeStream([event("Started", seconds=1)], error=RuntimeError("stream reset"))
    second = FakeStream([event("Running", seconds=5), event("Succeeded", seconds=11)])
    harness = Harness([first, second], FakeClock(T0, T0 + timedelta(seconds=10)))

    harness.watcher.start()
    await asyncio.wait_for(second.exhausted.wait(), timeout=1)
    await harness.settle()

    assert len(harness.source.opens) == 2
    assert harness.sleeps == [2.0]
    assert first.closed and second.closed
    # the Running event predates the reconnect
    assert harness.telemetry.posts == [("lkv0ier4", "Started"), ("lkv0ier4", "Succeeded")]
    assert harness.notifier.notified == [(PARAMS, "Succeeded")]


async def test_reconnects_after_stream_ends() -> None:
    first = FakeStream([], block=False)
    second = FakeStream([])
    harness = Harness([first, second], FakeClock(T0))

    harness.watcher.start()
    await asyncio.wait_for(second.exhausted.wait(), timeout=1)
    await harness.settle()

    assert harness.sleeps == [2.0]
    assert len(harness.source.opens) == 2


async def test_retries_after_connect_error() -> None:
    stream = FakeStream([event("Started")])
    harness = Harness([RuntimeError("no kubeconfig"), stream], FakeClock(T0))

    harness.watcher.start()
    await asyncio.wait_for(stream.exhausted.wait(), timeout=1)
    await harness.settle()

    assert harness.sleeps == [1.0]
    assert harness.telemetry.posts == [("lkv0ier4", "Started")]


# =============================================================================
# PLATFORM TELEMETRY
# =============================================================================


@respx.mock
async def test_telemetry_post(settings: Settings) -> None:
    route = respx.post("https://platform.test/v1/telemetry/pipeline/status").mock(
        return_value=Response(200, json={})
    )

    assert await PlatformTelemetryClient(settings).post_pipeline_status("lkv0ier4", "Timeout") is True

    request = route.calls.last.request
    assert request.headers["Authorization"] == "master-token"
    assert json.loads(request.content) == {"containerSlug": "lkv0ier4", "status": "Timeout"}


@respx.mock
async def test_telemetry_failure_is_logged_not_raised(settings: Settings) -> None:
    respx.post("https://platform.test/v1/telemetry/pipeline/status").mock(
        return_value=Response(503)
    )

    assert await PlatformTelemetryClient(settings).post_pipeline_status("lkv0ier4", "Failed") is False


async def test_telemetry_without_platform_url(settings: Settings) -> None:
    client = PlatformTelemetryClient(settings.model_copy(update={"platform_url": ""}))

    assert await client.post_pipeline_status("lkv0ier4", "Failed") is False


# =============================================================================
# KUBERNETES ADAPTERS
# =============================================================================


class StubResponse:
    """Watch response whose read blocks after its items until shut down."""

    def __init__(self, items: list[dict[str, Any]], block: bool = True):
        self.items = items
        self.block = block
        self.released = threading.Event()
        self.shutdowns = 0

    def shutdown(self) -> None:
        self.shutdowns += 1
        self.released.set()


class StubWatch:
    """Mirrors Watch.stream: the list call happens on the first read."""

    def __init__(self):
        self.stopped = False
        self.finished = threading.Event()

    def stream(self, func, *args, **kwargs):
        response = func(*args, watch=True, **kwargs)
        try:
            yield from response.items
            if response.block:
                response.released.wait(5)
        finally:
            self.finished.set()

    def stop(self) -> None:
        self.stopped = True


class StubCoreApi:
    def __init__(self, response: StubResponse):
        self.response = response
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def list_namespaced_event(self, namespace: str, **kwargs: Any) -> StubResponse:
        """List events.

        :return: V1EventList
        """
        self.calls.append((namespace, kwargs))
        return self.response


def v1_event(reason: str, **timestamps: datetime) -> client.CoreV1Event:
    return client.CoreV1Event(
        metadata=client.V1ObjectMeta(name=f"build-run-1.{reason.lower()}"),
        involved_object=client.V1ObjectReference(kind="TaskRun", name="build-run-1"),
        reason=reason,
        **timestamps,
    )


async def wait_until_listed(api: StubCoreApi) -> None:
    for _ in range(200):
        if api.calls:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("watch request never sent")


async def test_watch_stream_translates_events() -> None:
    items = [
        {"type": "ADDED", "object": None},
        {"type": "ADDED", "object": SimpleNamespace(involved_object=None, reason="Started")},
        {"type": "ADDED", "object": v1_event("Started", last_timestamp=T0 + timedelta(seconds=3), first_timestamp=T0)},
        {"type": "ADDED", "object": v1_event("Running", first_timestamp=T0 + timedelta(seconds=1))},
        {"type": "ADDED", "object": v1_event("Succeeded", event_time=T0 + timedelta(seconds=2))},
    ]
    api = StubCoreApi(StubResponse(items, block=False))
    stream = WatchStream(StubWatch(), api.list_namespaced_event, "builds", field_selector=TASK_RUN_FIELD_SELECTOR)

    events = [e async for e in stream]

    assert [(e.reason, e.involved_object_name, e.timestamp) for e in events] == [
        ("Started", "build-run-1", T0 + timedelta(seconds=3)),
        ("Running", "build-run-1", T0 + timedelta(seconds=1)),
        ("Succeeded", "build-run-1", T0 + timedelta(seconds=2)),
    ]
    assert api.calls == [("builds", {"watch": True, "field_selector": TASK_RUN_FIELD_SELECTOR})]


async def test_stop_releases_blocked_reader() -> None:
    response = StubResponse([])
    api = StubCoreApi(response)
    watcher = StubWatch()
    stream = WatchStream(watcher, api.list_namespaced_event, "builds")
    harness = Harness([stream], FakeClock(T0))

    harness.watcher.start()
    await wait_until_listed(api)
    await harness.watcher.stop()

    await asyncio.wait_for(asyncio.get_running_loop().shutdown_default_executor(), timeout=2)
    assert watcher.stopped
    assert watcher.finished.is_set()
    assert response.shutdowns == 1


async def test_close_before_first_read_shuts_response_down() -> None:
    response = StubResponse([])
    api = StubCoreApi(response)
    stream = WatchStream(StubWatch(), api.list_namespaced_event, "builds")

    await stream.aclose()

    assert [e async for e in stream] == []
    assert response.shutdowns == 1


async def test_event_source_opens_watch(monkeypatch: pytest.MonkeyPatch) -> None:
    api = StubCoreApi(StubResponse([{"type": "ADDED", "object": v1_event("Failed")}], block=False))
    loaded: list[str] = []
    monkeypatch.setattr(build_watcher, "load_kubernetes_config", loaded.append)
    monkeypatch.setattr(build_watcher.client, "CoreV1Api", lambda: api)
    monkeypatch.setattr(build_watcher.watch, "Watch", StubWatch)

    stream = await KubernetesEventSource("/etc/kube/config", timeout_seconds=60).open(
        "builds", TASK_RUN_FIELD_SELECTOR
    )
    events = [e async for e in stream]

    assert loaded == ["/etc/kube/config"]
    assert [e.reason for e in events] == ["Failed"]
    assert api.calls[0][1]["timeout_seconds"] == 60


async def test_task_run_reader_get() -> None:
    api = Mock(spec=["get_namespaced_custom_object"])
    api.get_namespaced_custom_object.return_value = task_run()
    reader = KubernetesTaskRunReader("builds", api=api)

    assert await reader.get("build-run-1") == task_run()
    api.get_namespaced_custom_object.assert_called_once_with(
        "tekton.dev", "v1beta1", "builds", "taskruns", "build-run-1"
    )


async def test_task_run_reader_api_error_returns_none() -> None:
    api = Mock(spec=["get_namespaced_custom_object"])
    api.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
    reader = KubernetesTaskRunReader("builds", api=api)

    assert await reader.get("missing-run") is None
