"""End-to-end orchestration with stub compressors and a content-echo verifier."""

import dataclasses
import threading
import zlib
from pathlib import Path

import pytest

from conftest import ScriptExecutor, StubExecutor, fail_with, make_installation
from test_rar_headers import write_volume
from rebrute.core import orchestrator as orchestrator_module
from rebrute.core.errors import ExecutionError, StorageFatalError
from rebrute.core.options import RecoveredMetadata, SearchPolicy
from rebrute.core.orchestrator import (
    CompletionReason,
    LogChannel,
    SearchStatus,
    TerminalState,
)
from rebrute.core.phases import Phase
from rebrute.core.rar_headers import patch_volume
from rebrute.core.switches import SwitchSelection
from rebrute.core.verification import HashType, Verifier
from rebrute.core.versions import VersionMatrix


def levels(*values):
    return SwitchSelection(compression_levels=list(values), dictionary_sizes=[], recurse=False)


def match_on(switch, hit="deadbeef", miss="11111111"):
    def _produce(installation, arguments):
        return hit if switch in arguments else miss
    return _produce


def channel_lines(events, channel):
    return [message for c, message in events["log"] if c is channel]


def test_deadbeef_end_to_end(build_options, build_orchestrator):
    options = build_options(hashes=["DEADBEEF"])
    executor = StubExecutor(lambda inst, args: "deadbeef" if args == ["a", "-m3", "-ma4"] else "00000000")
    orchestrator, events = build_orchestrator(options, executor)

    result = orchestrator.run()

    assert result.terminal is TerminalState.SUCCESS
    assert result.reason is CompletionReason.SUCCESS
    assert [m.arguments for m in result.matches] == ["a -m3 -ma4"]
    assert result.matches[0].installation_label == "rar-550"
    assert result.matches[0].volumes[0].exists()
    assert events["status"] == [
        (SearchStatus.RUNNING, None),
        (SearchStatus.COMPLETED, CompletionReason.SUCCESS),
    ]


def test_single_match_stops_search(build_options, build_orchestrator):
    options = build_options(switches=levels(0, 1, 2, 3, 4, 5))
    executor = StubExecutor(match_on("-m3"))
    orchestrator, events = build_orchestrator(options, executor)

    result = orchestrator.run()

    assert result.success
    assert len(result.matches) == 1
    assert [call[-1] for call in executor.calls] == ["-m0", "-m1", "-m2", "-m3"]
    assert result.candidates_tried == 4


def test_continue_after_match(build_options, build_orchestrator):
    options = build_options(
        switches=levels(0, 1, 2, 3, 4, 5),
        policy=SearchPolicy(stop_on_first_match=False),
    )
    executor = StubExecutor(match_on("-m3"))
    orchestrator, _ = build_orchestrator(options, executor)

    result = orchestrator.run()

    assert len(executor.calls) == 6
    assert len(result.matches) == 1


def test_stop_skips_remaining_versions(build_options, build_orchestrator, tmp_path, installations):
    second = make_installation(tmp_path / "installations", "rar-560", 560)
    options = build_options(switches=levels(3))
    executor = StubExecutor(match_on("-m3"))
    orchestrator, _ = build_orchestrator(
        options, executor, version_matrix=VersionMatrix(installations + [second], (5,))
    )

    result = orchestrator.run()

    assert result.success
    assert len(executor.calls) == 1


def test_exhausted_reports_error(build_options, build_orchestrator):
    options = build_options(switches=levels(1, 2))
    orchestrator, events = build_orchestrator(options, StubExecutor(lambda i, a: "11111111"))

    result = orchestrator.run()

    assert result.terminal is TerminalState.EXHAUSTED
    assert events["status"][-1] == (SearchStatus.COMPLETED, CompletionReason.ERROR)


class TestDuplicateCleanup:
    def test_duplicates_deleted(self, build_options, build_orchestrator, tmp_path):
        options = build_options(switches=levels(0, 1, 2))
        orchestrator, _ = build_orchestrator(options, StubExecutor(lambda i, a: "11111111"))
        orchestrator.run()
        assert len(list((tmp_path / "output").rglob("*.rar"))) == 1

    def test_duplicates_kept(self, build_options, build_orchestrator, tmp_path):
        options = build_options(
            switches=levels(0, 1, 2),
            policy=SearchPolicy(delete_duplicate_crc_files=False),
        )
        orchestrator, _ = build_orchestrator(options, StubExecutor(lambda i, a: "11111111"))
        orchestrator.run()
        assert len(list((tmp_path / "output").rglob("*.rar"))) == 3


class TestCancellation:
    def test_cancel_between_candidates(self, build_options, build_orchestrator):
        options = build_options(switches=levels(0, 1, 2, 3, 4, 5))
        cancel = threading.Event()

        def on_call(number, arguments):
            if number == 2:
                cancel.set()

        executor = StubExecutor(lambda i, a: "11111111", on_call=on_call)
        orchestrator, events = build_orchestrator(options, executor, cancel_event=cancel)

        result = orchestrator.run()

        assert result.terminal is TerminalState.CANCELLED
        assert len(executor.calls) == 2
        assert events["status"][-1] == (SearchStatus.COMPLETED, CompletionReason.CANCELLED)

    def test_cancel_wins_over_success(self, build_options, build_orchestrator):
        options = build_options(switches=levels(3))
        orchestrator = None

        def produce(installation, arguments):
            orchestrator.stop()
            return "deadbeef"

        executor = StubExecutor(produce)
        orchestrator, events = build_orchestrator(options, executor)

        result = orchestrator.run()

        assert result.terminal is TerminalState.CANCELLED
        assert result.matches == []

    def test_cancel_before_start(self, build_options, build_orchestrator):
        options = build_options()
        executor = StubExecutor(lambda i, a: "deadbeef")
        orchestrator, _ = build_orchestrator(options, executor)
        orchestrator.stop()

        assert orchestrator.run().terminal is TerminalState.CANCELLED
        assert executor.calls == []


class TestPhases:
    def test_no_comment_means_no_phase1(self, build_options, build_orchestrator):
        options = build_options()
        executor = StubExecutor(lambda i, a: "deadbeef")
        orchestrator, events = build_orchestrator(options, executor)

        orchestrator.run()

        assert channel_lines(events, LogChannel.PHASE1) == []
        assert not any(arg.startswith("-z") for call in executor.calls for arg in call)
        assert all(p.phase is Phase.PHASE2 for p in events["progress"])

    def test_comment_only_text_is_not_enough(self, build_options, build_orchestrator):
        options = build_options(metadata=RecoveredMetadata(comment_text=b"hello"))
        orchestrator, events = build_orchestrator(options, StubExecutor(lambda i, a: "deadbeef"))
        orchestrator.run()
        assert channel_lines(events, LogChannel.PHASE1) == []

    @pytest.fixture
    def comment_payload(self, monkeypatch):
        # Probe archives carry their "compressed comment" as plain content
        monkeypatch.setattr(orchestrator_module, "read_comment_payload", lambda path: path.read_bytes())
        return RecoveredMetadata(comment_text=b"hello", comment_compressed=b"cmt-m3")

    def test_phase1_narrows_phase2(self, build_options, build_orchestrator, comment_payload):
        options = build_options(switches=levels(1, 3, 5), metadata=comment_payload)

        def produce(installation, arguments):
            if "-zcomment.txt" in arguments:
                return "cmt" + [a for a in arguments if a.startswith("-m")][0]
            return "deadbeef" if "-m3" in arguments else "11111111"

        executor = StubExecutor(produce)
        orchestrator, events = build_orchestrator(options, executor)

        result = orchestrator.run()

        assert result.success
        phase2_calls = [c for c in executor.calls if "-zcomment.txt" not in c]
        assert phase2_calls == [["a", "-m3"]]
        assert channel_lines(events, LogChannel.PHASE1)
        assert not (options.output_dir / "_comment").exists()

    def test_no_comment_match_skips_phase2(self, build_options, build_orchestrator, comment_payload):
        options = build_options(switches=levels(1, 5), metadata=comment_payload)
        executor = StubExecutor(lambda i, a: "no-match")
        orchestrator, events = build_orchestrator(options, executor)

        result = orchestrator.run()

        assert result.terminal is TerminalState.EXHAUSTED
        assert all("-zcomment.txt" in call for call in executor.calls)
        assert any("skipping" in line for line in channel_lines(events, LogChannel.PHASE1))

    def test_comment_method_pins_level(self, build_options, build_orchestrator, comment_payload):
        metadata = RecoveredMetadata(comment_text=b"hello", comment_compressed=b"cmt-m5", comment_method=0x35)
        options = build_options(switches=levels(1, 3, 5), metadata=metadata)
        executor = StubExecutor(lambda i, a: "cmt-m5" if "-zcomment.txt" in a else "11111111")
        orchestrator, _ = build_orchestrator(options, executor)

        orchestrator.run()

        probes = [c for c in executor.calls if "-zcomment.txt" in c]
        assert probes == [["a", "-m5", "-zcomment.txt"]]


class TestErrors:
    def test_empty_target_is_configuration_error(self, build_options, build_orchestrator):
        options = build_options(hashes=[])
        orchestrator, events = build_orchestrator(options, StubExecutor(lambda i, a: "deadbeef"))

        result = orchestrator.run()

        assert result.terminal is TerminalState.ERROR
        assert "empty" in result.error
        assert events["status"][-1] == (SearchStatus.COMPLETED, CompletionReason.ERROR)

    def test_missing_release_dir(self, build_options, build_orchestrator, release_dir):
        options = build_options()
        for path in release_dir.iterdir():
            path.unlink()
        release_dir.rmdir()
        orchestrator, _ = build_orchestrator(options, StubExecutor(lambda i, a: "deadbeef"))
        assert orchestrator.run().terminal is TerminalState.ERROR

    def test_no_usable_version(self, build_options, build_orchestrator, tmp_path):
        options = build_options()
        old = make_installation(tmp_path / "installations", "rar-380", 380)
        orchestrator, _ = build_orchestrator(
            options, StubExecutor(lambda i, a: "deadbeef"), version_matrix=VersionMatrix([old], (5,))
        )
        result = orchestrator.run()
        assert result.terminal is TerminalState.ERROR

    def test_execution_error_skips_candidate(self, build_options, build_orchestrator):
        options = build_options(switches=levels(1, 3))

        def produce(installation, arguments):
            if "-m1" in arguments:
                raise ExecutionError("exited with code 2")
            return "deadbeef"

        orchestrator, events = build_orchestrator(options, StubExecutor(produce))
        result = orchestrator.run()

        assert result.success
        assert any("exited with code 2" in line for line in channel_lines(events, LogChannel.PHASE2))

    def test_every_candidate_failing_exhausts(self, build_options, build_orchestrator):
        options = build_options(switches=levels(1, 3))
        orchestrator, _ = build_orchestrator(options, StubExecutor(fail_with("boom")))
        assert orchestrator.run().terminal is TerminalState.EXHAUSTED

    def test_single_use(self, build_options, build_orchestrator):
        orchestrator, _ = build_orchestrator(build_options(), StubExecutor(lambda i, a: "deadbeef"))
        orchestrator.run()
        with pytest.raises(RuntimeError):
            orchestrator.run()


class TestPostProcessing:
    def test_rename_single_match(self, build_options, build_orchestrator):
        options = build_options(
            policy=SearchPolicy(rename_to_original=True),
            metadata=RecoveredMetadata(original_volume_names=("Release-GRP.rar",)),
        )
        orchestrator, _ = build_orchestrator(options, StubExecutor(lambda i, a: "deadbeef"))

        result = orchestrator.run()

        assert result.matches[0].volumes[0].name == "Release-GRP.rar"
        assert result.matches[0].volumes[0].exists()

    def test_split_archive_first_volume(self, build_options, build_orchestrator):
        options = build_options(
            hashes=["aaaaaaaa", "bbbbbbbb"],
            switches=SwitchSelection(compression_levels=[3], dictionary_sizes=[], recurse=False,
                                     volume_size=100),
        )
        executor = StubExecutor(lambda i, a: ["aaaaaaaa", "bbbbbbbb"])
        orchestrator, _ = build_orchestrator(options, executor)

        result = orchestrator.run()

        assert result.success
        assert result.matches[0].partial
        assert len(result.matches[0].volumes) == 1
        assert executor.first_volume_flags == [True]

    def test_split_archive_complete_all_volumes(self, build_options, build_orchestrator):
        options = build_options(
            hashes=["aaaaaaaa", "bbbbbbbb"],
            switches=SwitchSelection(compression_levels=[3], dictionary_sizes=[], recurse=False,
                                     volume_size=100),
            policy=SearchPolicy(complete_all_volumes=True),
        )
        executor = StubExecutor(lambda i, a: ["aaaaaaaa", "bbbbbbbb"])
        orchestrator, _ = build_orchestrator(options, executor)

        result = orchestrator.run()

        assert result.success
        assert not result.matches[0].partial
        assert [v.name for v in result.matches[0].volumes] == ["release.part1.rar", "release.part2.rar"]
        assert executor.first_volume_flags == [True, False]

    def test_progress_reaches_total(self, build_options, build_orchestrator, release_dir):
        options = build_options(switches=levels(1, 2), policy=SearchPolicy(stop_on_first_match=False))
        orchestrator, events = build_orchestrator(options, StubExecutor(lambda i, a: "11111111"))

        orchestrator.run()

        progress = events["progress"]
        size = sum(p.stat().st_size for p in release_dir.iterdir())
        assert [p.bytes_processed for p in progress] == [size, 2 * size]
        assert progress[-1].bytes_total == 2 * size
        assert progress[-1].percent == 100.0

    def test_sha1_target(self, build_options, build_orchestrator):
        digest = "a9993e364706816aba3e25717850c26c9cd0d89d"
        options = build_options(hashes=[digest], hash_type=HashType.SHA1)
        orchestrator, _ = build_orchestrator(options, StubExecutor(lambda i, a: digest))
        assert orchestrator.run().success


class TestHeaderPatchPass:
    def test_match_only_after_patching(self, build_options, build_orchestrator, tmp_path):
        metadata = RecoveredMetadata(host_os=2)
        expected = write_volume(tmp_path / "expected.rar")
        patch_volume(expected, metadata.header_patch())
        target = f"{zlib.crc32(expected.read_bytes()) & 0xFFFFFFFF:08x}"

        template = write_volume(tmp_path / "produced.rar").read_bytes()
        options = build_options(
            hashes=[target], switches=levels(3),
            policy=SearchPolicy(header_patching=True), metadata=metadata,
        )
        orchestrator, _ = build_orchestrator(
            options, StubExecutor(lambda i, a: template), verifier=Verifier(options.target)
        )

        result = orchestrator.run()

        assert result.success
        match = result.matches[0]
        assert match.patched
        assert match.checksums == [target]
        assert match.volumes[0].read_bytes() == expected.read_bytes()

    def test_unpatched_output_does_not_match(self, build_options, build_orchestrator, tmp_path):
        metadata = RecoveredMetadata(host_os=2)
        expected = write_volume(tmp_path / "expected.rar")
        patch_volume(expected, metadata.header_patch())
        target = f"{zlib.crc32(expected.read_bytes()) & 0xFFFFFFFF:08x}"

        template = write_volume(tmp_path / "produced.rar").read_bytes()
        options = build_options(hashes=[target], switches=levels(3), metadata=metadata)
        orchestrator, _ = build_orchestrator(
            options, StubExecutor(lambda i, a: template), verifier=Verifier(options.target)
        )

        assert orchestrator.run().terminal is TerminalState.EXHAUSTED


class TestStorageFailure:
    def test_unreadable_output_aborts_search(self, build_options, build_orchestrator, monkeypatch):
        options = build_options(switches=levels(1, 2, 3))
        executor = StubExecutor(lambda i, a: "11111111")
        orchestrator, events = build_orchestrator(options, executor)

        def unreadable(path):
            raise StorageFatalError(f"Cannot read produced volume {path}: I/O error")

        monkeypatch.setattr(orchestrator.verifier, "compute", unreadable)

        result = orchestrator.run()

        assert result.terminal is TerminalState.ERROR
        assert "I/O error" in result.error
        assert executor.calls == [["a", "-m1"]]
        assert events["status"][-1] == (SearchStatus.COMPLETED, CompletionReason.ERROR)

    def test_unknown_archive_format_is_configuration_error(self, build_options, build_orchestrator):
        options = build_options(switches=SwitchSelection(
            compression_levels=[3], archive_formats=[3], dictionary_sizes=[], recurse=False
        ))
        executor = StubExecutor(lambda i, a: "deadbeef")
        orchestrator, events = build_orchestrator(options, executor)

        result = orchestrator.run()

        assert result.terminal is TerminalState.ERROR
        assert "Archive format" in result.error
        assert executor.calls == []
        assert events["status"][-1] == (SearchStatus.COMPLETED, CompletionReason.ERROR)


class TestRealCompressor:
    def test_relative_output_dir(self, build_options, build_orchestrator, fake_compressor,
                                 release_dir, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        target = f"{zlib.crc32(b'archive a -m3') & 0xFFFFFFFF:08x}"
        options = dataclasses.replace(
            build_options(hashes=[target], switches=levels(3)), output_dir=Path("out")
        )
        orchestrator, _ = build_orchestrator(
            options, ScriptExecutor(fake_compressor, poll_interval=0.05), verifier=Verifier(options.target)
        )

        result = orchestrator.run()

        assert result.success
        volume = result.matches[0].volumes[0]
        assert volume.is_absolute()
        assert (tmp_path / "out").resolve() in volume.parents
        assert not list(release_dir.rglob("*.rar"))


class TestSummaryLines:
    def test_deleted_outputs_reported(self, build_options, build_orchestrator):
        options = build_options(switches=levels(1, 2), policy=SearchPolicy(stop_on_first_match=False))
        orchestrator, events = build_orchestrator(options, StubExecutor(lambda i, a: "11111111"))

        orchestrator.run()

        assert "Deleted 1 non-matching output(s)" in channel_lines(events, LogChannel.SYSTEM)

    def test_disabled_versions_reported(self, build_options, build_orchestrator, installations, tmp_path):
        old = make_installation(tmp_path / "installations", "rar-380", 380)
        options = build_options(switches=levels(3))
        orchestrator, events = build_orchestrator(
            options, StubExecutor(lambda i, a: "deadbeef"),
            version_matrix=VersionMatrix(installations + [old], (5,)),
        )

        assert orchestrator.run().success
        assert "Versions not enabled, skipped: rar-380" in channel_lines(events, LogChannel.SYSTEM)
