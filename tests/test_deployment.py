"""Tests for applying repository updates to a mounted image."""

from pathlib import Path

import pytest

from core.image.session import ImageSession
from core.updates.deployment import ApplyResult, PatchDeploymentEngine
from core.updates.models import UpdateClass

LCU_MSU = "windows10.0-kb5034122-x64_abc.msu"
SSU_CAB = "SSU-19041.3745-x64.cab"
LCU_CAB = "Windows10.0-KB5034122-x64.cab"


def _session(tmp_path, os_family="Windows 10", version="22H2") -> ImageSession:
    mount = tmp_path / "mount"
    mount.mkdir(exist_ok=True)
    return ImageSession(
        source_path=tmp_path / "install.wim",
        index=1,
        output_dir=tmp_path,
        output_name="out",
        mount_dir=mount,
        os_family=os_family,
        version=version,
    )


def _store(workspace, os_family, version, update_class, title, *files) -> Path:
    folder = workspace / "updates" / os_family / version / update_class / title
    folder.mkdir(parents=True)
    for name in files:
        (folder / name).write_bytes(b"x")
    return folder


@pytest.fixture
def engine(config, dism):
    dism.expand_contents[LCU_MSU] = [SSU_CAB, LCU_CAB, "WSUSSCAN.cab", "Windows10.0-KB5034122-x64.xml"]
    return PatchDeploymentEngine(config, dism)


class TestCumulativeUpdates:
    def test_split_applies_servicing_stack_before_cumulative(self, engine, dism, workspace, tmp_path):
        _store(workspace, "Windows 10", "22H2", "LCU", "KB5034122", LCU_MSU)

        result = engine.apply(_session(tmp_path), UpdateClass.LCU)

        assert result is ApplyResult.APPLIED
        assert dism.packages_added() == [SSU_CAB, LCU_CAB]

    def test_split_skips_cumulative_when_servicing_stack_fails(self, engine, dism, workspace, tmp_path):
        _store(workspace, "Windows 10", "22H2", "LCU", "KB5034122", LCU_MSU)
        dism.failing_packages.append(SSU_CAB)

        result = engine.apply(_session(tmp_path), UpdateClass.LCU)

        assert result is ApplyResult.FAILED
        assert dism.packages_added() == [SSU_CAB]

    def test_split_cleans_extraction_folder(self, engine, workspace, tmp_path):
        _store(workspace, "Windows 10", "22H2", "LCU", "KB5034122", LCU_MSU)

        engine.apply(_session(tmp_path), UpdateClass.LCU)

        assert not (workspace / "staging" / "extract" / Path(LCU_MSU).stem).exists()

    def test_convert_applies_only_cumulative_cab(self, engine, dism, workspace, tmp_path):
        _store(workspace, "Windows 11", "23H2", "LCU", "KB5034122", LCU_MSU)

        result = engine.apply(_session(tmp_path, "Windows 11", "23H2"), UpdateClass.LCU)

        assert result is ApplyResult.APPLIED
        assert dism.packages_added() == [LCU_CAB]

    def test_unlisted_version_applies_package_directly(self, engine, dism, workspace, tmp_path):
        _store(workspace, "Windows 11", "24H2", "LCU", "KB5044284", "windows11.0-kb5044284-x64.msu")

        result = engine.apply(_session(tmp_path, "Windows 11", "24H2"), UpdateClass.LCU)

        assert result is ApplyResult.APPLIED
        assert dism.packages_added() == ["windows11.0-kb5044284-x64.msu"]
        assert "expand_file" not in dism.call_names()

    def test_handling_follows_configuration(self, engine, config, dism, workspace, tmp_path):
        config.set("lcu_handling.Windows 11.24H2", "split")
        name = "windows11.0-kb5044284-x64.msu"
        dism.expand_contents[name] = ["SSU-26100.2033-x64.cab", "Windows11.0-KB5044284-x64.cab"]
        _store(workspace, "Windows 11", "24H2", "LCU", "KB5044284", name)

        engine.apply(_session(tmp_path, "Windows 11", "24H2"), UpdateClass.LCU)

        assert dism.packages_added() == ["SSU-26100.2033-x64.cab", "Windows11.0-KB5044284-x64.cab"]


class TestOtherClasses:
    def test_empty_class_is_skipped(self, engine, dism, tmp_path):
        assert engine.apply(_session(tmp_path), UpdateClass.DOTNET) is ApplyResult.SKIPPED
        assert dism.packages_added() == []

    def test_one_failure_does_not_stop_remaining_artifacts(self, engine, dism, workspace, tmp_path):
        _store(workspace, "Windows 10", "22H2", "DotNet", "A", "ndp48-a.cab")
        _store(workspace, "Windows 10", "22H2", "DotNet", "B", "ndp48-b.cab")
        dism.failing_packages.append("ndp48-a.cab")

        result = engine.apply(_session(tmp_path), UpdateClass.DOTNET)

        assert result is ApplyResult.FAILED
        assert dism.packages_added() == ["ndp48-a.cab", "ndp48-b.cab"]

    def test_explicit_mount_dir_overrides_session(self, engine, dism, workspace, tmp_path):
        _store(workspace, "Windows 10", "22H2", "SSU", "KB5031539", "ssu-19041.3570-x64.cab")
        boot_mount = tmp_path / "boot-mount"

        engine.apply(_session(tmp_path), UpdateClass.SSU, mount_dir=boot_mount)

        assert dism.calls[-1] == ("add_package", str(boot_mount), "ssu-19041.3570-x64.cab")

    def test_partial_downloads_are_ignored(self, engine, dism, workspace, tmp_path):
        _store(workspace, "Windows 10", "22H2", "SSU", "KB5031539", "ssu.cab", "next.cab.part")

        engine.apply(_session(tmp_path), UpdateClass.SSU)

        assert dism.packages_added() == ["ssu.cab"]


class TestDynamicUpdates:
    def test_skipped_without_media_staging(self, engine, dism, workspace, tmp_path):
        _store(workspace, "Windows 10", "22H2", "Dynamic", "KB5034231", "du.cab")

        assert engine.apply(_session(tmp_path), UpdateClass.DYNAMIC) is ApplyResult.SKIPPED
        assert "expand_file" not in dism.call_names()

    def test_extracted_into_media_sources_not_mount(self, engine, dism, workspace, tmp_path):
        _store(workspace, "Windows 10", "22H2", "Dynamic", "KB5034231", "du.cab")
        session = _session(tmp_path)
        session.media_dir = tmp_path / "media"
        session.media_dir.mkdir()

        result = engine.apply(session, UpdateClass.DYNAMIC)

        assert result is ApplyResult.APPLIED
        assert ("expand_file", "du.cab", str(session.media_dir / "sources")) in dism.calls
        assert dism.packages_added() == []
