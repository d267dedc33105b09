# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from datetime import datetime, timezone
from pathlib import Path

from starlette.websockets import WebSocketState

from archive.accumulator import WindowAccumulator
from archive.pipeline import ArchivePipeline, CycleOutcome
from archive.publisher import ArchiveKeyFactory, ArchivePublisher, UploadError
from archive.scheduler import WindowScheduler
from archive.transcoder import TranscodeResult
from constants import METADATA_RETRY_DELAYS_MS
from metadata.mission_client import MissionLookupError, NoActiveMission
from relay.connection import RelayConnection
from relay.registry import ConnectionRegistry


FIXED_UTC = datetime(2024, 5, 1, 9, 30, 15, tzinfo=timezone.utc)


async def no_sleep(_: float) -> None:
    return None


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------

class FakeMissions:
    def __init__(self, mission_id: str = "m-1", error: Exception | None = None) -> None:
        self.mission_id = mission_id
        self.error = error
        self.calls = 0

    async def current_mission_id(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.mission_id


class FakeTranscoder:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.inputs: list[bytes] = []

    async def transcode(self, raw_path: Path, output_path: Path) -> TranscodeResult:
        raw = raw_path.read_bytes()
        self.inputs.append(raw)
        if not self.ok:
            output_path.write_bytes(b"partial")
            return TranscodeResult(ok=False, output_path=output_path, returncode=1, stderr="Invalid data")
        output_path.write_bytes(b"MP3:" + raw)
        return TranscodeResult(ok=True, output_path=output_path, returncode=0)


class FakeStore:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.objects: dict[str, bytes] = {}

    async def put_object(self, key: str, body: bytes, content_type: str) -> None:
        if self.fail:
            raise UploadError("connection reset")
        self.objects[key] = body


class SpyPublisher:
    def __init__(self) -> None:
        self.calls = 0

    async def publish(self, encoded_path, mission_id, *, raw_path=None, window_id=None) -> str:
        self.calls += 1
        return "never"


class FakeWebSocket:
    def __init__(self) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[bytes] = []

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)


def make_pipeline(
    tmp_path: Path,
    *,
    missions: FakeMissions | None = None,
    transcoder: FakeTranscoder | None = None,
    store: FakeStore | None = None,
    publisher=None,
) -> tuple[ArchivePipeline, FakeMissions, FakeTranscoder, FakeStore]:
    missions = missions or FakeMissions()
    transcoder = transcoder or FakeTranscoder()
    store = store or FakeStore()
    publisher = publisher or ArchivePublisher(
        store=store,
        keys=ArchiveKeyFactory("Etc/GMT-3", clock=lambda: FIXED_UTC),
        sleep=no_sleep,
    )
    pipeline = ArchivePipeline(
        missions=missions,
        transcoder=transcoder,
        publisher=publisher,
        work_dir=tmp_path,
        sleep=no_sleep,
    )
    return pipeline, missions, transcoder, store


def window_of(*chunks: bytes):
    acc = WindowAccumulator()
    for chunk in chunks:
        acc.append(chunk)
    return acc.drain()


# ---------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------

def test_cycle_archives_window_and_cleans_up(tmp_path: Path):
    pipeline, missions, transcoder, store = make_pipeline(tmp_path)

    report = asyncio.run(pipeline.run_cycle(window_of(b"\x01", b"\x02")))

    assert report.outcome is CycleOutcome.ARCHIVED
    assert report.mission_id == "m-1"
    assert report.key == "m-1/audio_01-05-2024_12:30:15.mp3"
    assert transcoder.inputs == [b"\x01\x02"]
    assert store.objects[report.key] == b"MP3:\x01\x02"
    assert missions.calls == 1
    assert list(tmp_path.iterdir()) == []


def test_empty_window_calls_no_collaborator(tmp_path: Path):
    spy = SpyPublisher()
    pipeline, missions, transcoder, _ = make_pipeline(tmp_path, publisher=spy)

    report = asyncio.run(pipeline.run_cycle(window_of()))

    assert report.outcome is CycleOutcome.EMPTY
    assert missions.calls == 0
    assert transcoder.inputs == []
    assert spy.calls == 0


def test_mission_resolved_every_cycle(tmp_path: Path):
    missions = FakeMissions("m-1")
    pipeline, _, _, store = make_pipeline(tmp_path, missions=missions)

    async def run():
        first = await pipeline.run_cycle(window_of(b"a"))
        missions.mission_id = "m-2"
        second = await pipeline.run_cycle(window_of(b"b"))
        return first, second

    first, second = asyncio.run(run())

    assert first.key.startswith("m-1/")
    assert second.key.startswith("m-2/")
    assert missions.calls == 2
    assert len(store.objects) == 2


def test_two_consecutive_windows_get_distinct_keys(tmp_path: Path):
    pipeline, _, _, store = make_pipeline(tmp_path)

    async def run():
        return [
            await pipeline.run_cycle(window_of(b"first")),
            await pipeline.run_cycle(window_of(b"second")),
        ]

    reports = asyncio.run(run())

    keys = [r.key for r in reports]
    assert keys[0] != keys[1]
    assert store.objects[keys[0]] == b"MP3:first"
    assert store.objects[keys[1]] == b"MP3:second"


def test_overlapping_cycles_use_separate_temp_files(tmp_path: Path):
    pipeline, _, transcoder, store = make_pipeline(tmp_path)

    async def run():
        return await asyncio.gather(
            pipeline.run_cycle(window_of(b"one")),
            pipeline.run_cycle(window_of(b"two")),
        )

    reports = asyncio.run(run())

    assert all(r.outcome is CycleOutcome.ARCHIVED for r in reports)
    assert sorted(transcoder.inputs) == [b"one", b"two"]
    assert sorted(store.objects.values()) == [b"MP3:one", b"MP3:two"]
    assert list(tmp_path.iterdir()) == []


# ---------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------

def test_transcode_failure_never_publishes_and_cleans_up(tmp_path: Path):
    spy = SpyPublisher()
    pipeline, _, transcoder, _ = make_pipeline(
        tmp_path, transcoder=FakeTranscoder(ok=False), publisher=spy
    )

    report = asyncio.run(pipeline.run_cycle(window_of(b"\x01\x02")))

    assert report.outcome is CycleOutcome.TRANSCODE_FAILED
    assert transcoder.inputs == [b"\x01\x02"]
    assert spy.calls == 0
    assert list(tmp_path.iterdir()) == []


def test_transcode_failure_reaches_no_blob(tmp_path: Path):
    pipeline, _, _, store = make_pipeline(tmp_path, transcoder=FakeTranscoder(ok=False))

    asyncio.run(pipeline.run_cycle(window_of(b"\x01\x02")))

    assert store.objects == {}


def test_metadata_failure_abandons_cycle_after_retries(tmp_path: Path):
    missions = FakeMissions(error=MissionLookupError("db unreachable"))
    pipeline, _, transcoder, store = make_pipeline(tmp_path, missions=missions)

    report = asyncio.run(pipeline.run_cycle(window_of(b"\x01")))

    assert report.outcome is CycleOutcome.METADATA_FAILED
    assert missions.calls == 1 + len(METADATA_RETRY_DELAYS_MS)
    assert transcoder.inputs == []
    assert store.objects == {}
    assert list(tmp_path.iterdir()) == []


def test_no_active_mission_not_retried(tmp_path: Path):
    missions = FakeMissions(error=NoActiveMission("no rows"))
    pipeline, _, _, _ = make_pipeline(tmp_path, missions=missions)

    report = asyncio.run(pipeline.run_cycle(window_of(b"\x01")))

    assert report.outcome is CycleOutcome.METADATA_FAILED
    assert missions.calls == 1


def test_upload_failure_retains_encoded_removes_raw(tmp_path: Path):
    pipeline, _, _, _ = make_pipeline(tmp_path, store=FakeStore(fail=True))

    report = asyncio.run(pipeline.run_cycle(window_of(b"\x01")))

    assert report.outcome is CycleOutcome.UPLOAD_FAILED
    assert report.mission_id == "m-1"
    leftovers = list(tmp_path.iterdir())
    assert [p.suffix for p in leftovers] == [".mp3"]


def test_unexpected_error_reported_not_raised(tmp_path: Path):
    class ExplodingTranscoder:
        async def transcode(self, raw_path, output_path):
            raise ValueError("bad path")

    pipeline, _, _, _ = make_pipeline(tmp_path, transcoder=ExplodingTranscoder())  # type: ignore[arg-type]

    report = asyncio.run(pipeline.run_cycle(window_of(b"\x01")))

    assert report.outcome is CycleOutcome.ERROR
    assert "bad path" in report.error
    assert list(tmp_path.iterdir()) == []


# ---------------------------------------------------------------------
# End to end: relay + accumulator + scheduler + pipeline
# ---------------------------------------------------------------------

def test_chunk_relayed_then_archived_from_one_window(tmp_path: Path):
    pipeline, _, transcoder, store = make_pipeline(tmp_path)
    acc = WindowAccumulator()
    registry = ConnectionRegistry(acc)
    scheduler = WindowScheduler(acc, pipeline, period_s=20)

    ws_a, ws_b = FakeWebSocket(), FakeWebSocket()
    a = RelayConnection(ws_a, connection_id="a")  # type: ignore[arg-type]
    b = RelayConnection(ws_b, connection_id="b")  # type: ignore[arg-type]
    registry.register(a)
    registry.register(b)

    async def run():
        await registry.on_chunk(a, b"\x01\x02")
        await asyncio.sleep(0)
        assert ws_b.sent == [b"\x01\x02"]

        task = scheduler.tick()
        assert acc.is_empty()
        assert task is not None
        return await task

    report = asyncio.run(run())

    assert transcoder.inputs == [b"\x01\x02"]
    assert report.outcome is CycleOutcome.ARCHIVED
    assert store.objects[report.key] == b"MP3:\x01\x02"


def test_failed_cycle_leaves_relay_operational(tmp_path: Path):
    missions = FakeMissions(error=MissionLookupError("db unreachable"))
    pipeline, _, _, _ = make_pipeline(tmp_path, missions=missions)
    acc = WindowAccumulator()
    registry = ConnectionRegistry(acc)
    scheduler = WindowScheduler(acc, pipeline, period_s=20)

    ws_a, ws_b = FakeWebSocket(), FakeWebSocket()
    a = RelayConnection(ws_a, connection_id="a")  # type: ignore[arg-type]
    b = RelayConnection(ws_b, connection_id="b")  # type: ignore[arg-type]
    registry.register(a)
    registry.register(b)

    async def run():
        await registry.on_chunk(a, b"\x01")
        report = await scheduler.tick()
        delivered = await registry.on_chunk(a, b"\x02")
        await asyncio.sleep(0)
        return report, delivered

    report, delivered = asyncio.run(run())

    assert report.outcome is CycleOutcome.METADATA_FAILED
    assert delivered == 1
    assert ws_b.sent == [b"\x01", b"\x02"]
    assert acc.drain().chunks == (b"\x02",)


def test_chunks_arriving_during_cycle_go_to_next_window(tmp_path: Path):
    class SlowTranscoder(FakeTranscoder):
        def __init__(self) -> None:
            super().__init__()
            self.release: asyncio.Event | None = None

        async def transcode(self, raw_path, output_path):
            assert self.release is not None
            await self.release.wait()
            return await super().transcode(raw_path, output_path)

    transcoder = SlowTranscoder()
    pipeline, _, _, store = make_pipeline(tmp_path, transcoder=transcoder)
    acc = WindowAccumulator()
    registry = ConnectionRegistry(acc)
    scheduler = WindowScheduler(acc, pipeline, period_s=20)
    a = RelayConnection(FakeWebSocket(), connection_id="a")  # type: ignore[arg-type]
    registry.register(a)

    async def run():
        transcoder.release = asyncio.Event()
        await registry.on_chunk(a, b"w1")
        first = scheduler.tick()
        await asyncio.sleep(0)
        await registry.on_chunk(a, b"w2")
        transcoder.release.set()
        first_report = await first
        second_report = await scheduler.tick()
        return first_report, second_report

    first_report, second_report = asyncio.run(run())

    assert transcoder.inputs == [b"w1", b"w2"]
    assert store.objects[first_report.key] == b"MP3:w1"
    assert store.objects[second_report.key] == b"MP3:w2"
