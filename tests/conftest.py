"""Shared fixtures: stub compressors, content-echo verifier, search builders."""

from __future__ import annotations

import sys
import textwrap
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

from rebrute.core.errors import ExecutionError
from rebrute.core.executor import CandidateExecutor, ExecutionOutcome
from rebrute.core.options import RecoveredMetadata, SearchOptions, SearchPolicy
from rebrute.core.switches import SwitchSelection
from rebrute.core.verification import HashType, Verifier, VerificationTarget
from rebrute.core.versions import CompressorInstallation, VersionMatrix
from rebrute.core.volumes import archive_base_name


class ContentVerifier(Verifier):
    """Treats a volume's text content as its checksum."""

    def compute(self, path: Path) -> str:
        return Path(path).read_text(encoding='utf-8').strip().lower()


class StubExecutor:
    """
    Stands in for CandidateExecutor.

    `produce(installation, arguments)` returns the text (or raw bytes)
    written to the produced volume, a list of texts for a split archive,
    or raises.
    """

    def __init__(
        self,
        produce: Callable[[CompressorInstallation, List[str]], object],
        on_call: Optional[Callable[[int, List[str]], None]] = None
    ) -> None:
        self.produce = produce
        self.on_call = on_call
        self.calls: List[List[str]] = []
        self.first_volume_flags: List[bool] = []

    def run(
        self,
        installation: CompressorInstallation,
        arguments: Sequence[str],
        archive_path: Path,
        inputs: Sequence[str],
        cwd: Path,
        cancel_event: Optional[threading.Event] = None,
        first_volume_only: bool = False
    ) -> ExecutionOutcome:
        arguments = list(arguments)
        self.calls.append(arguments)
        self.first_volume_flags.append(first_volume_only)
        if self.on_call:
            self.on_call(len(self.calls), arguments)

        if cancel_event is not None and cancel_event.is_set():
            return ExecutionOutcome(completed=False, cancelled=True)

        content = self.produce(installation, arguments)
        archive_path = Path(archive_path)

        if isinstance(content, list):
            base = archive_base_name(archive_path.name)
            partial = first_volume_only and len(content) > 1
            if partial:
                content = content[:1]
            volumes = []
            for number, text in enumerate(content, start=1):
                volume = archive_path.parent / f"{base}.part{number}.rar"
                volume.write_text(text, encoding='utf-8')
                volumes.append(volume)
            return ExecutionOutcome(completed=True, partial=partial, volumes=volumes, returncode=0)

        if isinstance(content, bytes):
            archive_path.write_bytes(content)
        else:
            archive_path.write_text(str(content), encoding='utf-8')
        return ExecutionOutcome(completed=True, volumes=[archive_path], returncode=0)


class ScriptExecutor(CandidateExecutor):
    """Runs the fake compressor script through the current interpreter."""

    def __init__(self, script: Path, **kwargs) -> None:
        super().__init__(**kwargs)
        self.script = script

    def build_command(self, installation, arguments, archive_path, inputs):
        return [sys.executable, str(self.script), *arguments, str(archive_path), *inputs]


FAKE_COMPRESSOR = textwrap.dedent('''
    import pathlib
    import sys
    import time

    args = sys.argv[1:]
    command, rest = args[0], args[1:]
    switches = [a for a in rest if a.startswith("-")]
    paths = [a for a in rest if not a.startswith("-")]
    archive = pathlib.Path(paths[0])

    if "-noisy" in switches:
        sys.stderr.write("WARNING: Cannot open file\\n" * 12000)
        sys.stderr.flush()
    if "-fail" in switches:
        sys.stderr.write("fatal error")
        sys.exit(3)
    if "-sleep" in switches:
        time.sleep(30)
    if "-none" in switches:
        sys.exit(0)
    if "-split" in switches:
        base = archive.name[:-4]
        for number in range(1, 4):
            (archive.parent / f"{base}.part{number}.rar").write_bytes(b"volume %d" % number)
            time.sleep(1.0)
        sys.exit(0)

    archive.write_bytes(("archive " + " ".join([command] + switches)).encode())
    sys.exit(1 if "-warn" in switches else 0)
''')


@pytest.fixture
def fake_compressor(tmp_path: Path) -> Path:
    script = tmp_path / "fake_rar.py"
    script.write_text(FAKE_COMPRESSOR, encoding='utf-8')
    return script


def make_installation(root: Path, label: str, version: int) -> CompressorInstallation:
    directory = root / label
    directory.mkdir(parents=True, exist_ok=True)
    executable = directory / "rar"
    executable.write_text("", encoding='utf-8')
    return CompressorInstallation(directory, executable, version)


@pytest.fixture
def release_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "release"
    directory.mkdir()
    (directory / "movie.mkv").write_bytes(b"x" * 100)
    (directory / "movie.nfo").write_bytes(b"info")
    return directory


@pytest.fixture
def installations(tmp_path: Path) -> List[CompressorInstallation]:
    return [make_installation(tmp_path / "installations", "rar-550", 550)]


@pytest.fixture
def build_options(tmp_path: Path, release_dir: Path):
    """Factory for SearchOptions over the release fixture."""

    def _build(
        hashes: Sequence[str] = ("deadbeef",),
        switches: Optional[SwitchSelection] = None,
        policy: Optional[SearchPolicy] = None,
        metadata: Optional[RecoveredMetadata] = None,
        hash_type: HashType = HashType.CRC32,
        names: Optional[Sequence[str]] = None
    ) -> SearchOptions:
        names = list(names) if names is not None else ["release.rar"] * len(hashes)
        return SearchOptions(
            installations_dir=tmp_path / "installations",
            release_dir=release_dir,
            output_dir=tmp_path / "output",
            target=VerificationTarget.from_pairs(zip(names, hashes), hash_type),
            switches=switches or SwitchSelection(
                compression_levels=[3], archive_formats=[4], dictionary_sizes=[], recurse=False
            ),
            policy=policy or SearchPolicy(),
            metadata=metadata or RecoveredMetadata(),
            enabled_majors=(5,),
        )

    return _build


@pytest.fixture
def build_orchestrator(installations):
    """Factory wiring an orchestrator to a stub executor and the content verifier."""
    from rebrute.core.orchestrator import SearchOrchestrator

    def _build(options: SearchOptions, executor, **kwargs):
        events = {"progress": [], "status": [], "log": []}
        orchestrator = SearchOrchestrator(
            options,
            on_progress=events["progress"].append,
            on_status_changed=lambda status, reason: events["status"].append((status, reason)),
            on_log=lambda channel, message: events["log"].append((channel, message)),
            executor=executor,
            verifier=kwargs.pop("verifier", None) or ContentVerifier(options.target),
            version_matrix=kwargs.pop("version_matrix", VersionMatrix(installations, options.enabled_majors)),
            **kwargs
        )
        return orchestrator, events

    return _build


def fail_with(message: str):
    def _raise(installation, arguments):
        raise ExecutionError(message, returncode=2)
    return _raise
