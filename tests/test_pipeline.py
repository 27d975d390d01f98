"""Tests for capi_builder.pipeline module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from capi_builder.exceptions import (
    BuildError,
    ConversionFailure,
    ExtractionFailure,
    FirmwareNotFound,
    ResourceUnavailable,
)
from capi_builder.leases import ResourceLeaseManager
from capi_builder.models import Artifact, ArtifactFormat, TestResult, TestStatus, ValidationReport
from capi_builder.pipeline import MODE_DOCKER, MODE_LOCAL, BuildPipeline, collect_artifacts


@pytest.fixture
def resolver(firmware_pair):
    mock = MagicMock()
    mock.resolve.return_value = firmware_pair
    return mock


@pytest.fixture
def lease_manager():
    return ResourceLeaseManager(port_range=(2200, 2210))


def _pipeline(build_config, lease_manager, resolver, mode=MODE_LOCAL, native=False):
    return BuildPipeline(build_config, mode=mode, lease_manager=lease_manager, resolver=resolver, native=native)


def _base_image(build_config):
    build_config.output_dir.mkdir(parents=True, exist_ok=True)
    build_config.base_image_path.write_bytes(b"qcow2")
    return Artifact(build_config.base_image_path, ArtifactFormat.BASE_IMAGE)


class TestCollectArtifacts:
    def test_only_existing_outputs(self, build_config):
        _base_image(build_config)
        stem = build_config.base_image_path.with_suffix("")
        stem.with_name(stem.name + ".vmdk").write_bytes(b"v")
        pxe = build_config.boot_artifact_dir
        pxe.mkdir()
        (pxe / "vmlinuz-arm64").write_bytes(b"k")
        formats = [artifact.format for artifact in collect_artifacts(build_config)]
        assert formats == [ArtifactFormat.BASE_IMAGE, ArtifactFormat.STREAM, ArtifactFormat.BOOT_KERNEL]

    def test_nothing_built(self, build_config):
        assert collect_artifacts(build_config) == []


class TestNeedsFirmware:
    @pytest.mark.parametrize(
        "mode, native, skip_build, skip_test, expected",
        [
            (MODE_LOCAL, False, False, False, True),
            (MODE_LOCAL, False, True, False, False),
            (MODE_DOCKER, False, False, False, False),
            (MODE_DOCKER, True, False, False, True),
            (MODE_DOCKER, True, False, True, False),
        ],
    )
    def test_matrix(self, build_config, lease_manager, resolver, mode, native, skip_build, skip_test, expected):
        pipeline = _pipeline(build_config, lease_manager, resolver, mode=mode, native=native)
        assert pipeline.needs_firmware(skip_build, skip_test) is expected


class TestRun:
    def test_local_build_success(self, build_config, lease_manager, resolver):
        base = _base_image(build_config)
        pipeline = _pipeline(build_config, lease_manager, resolver)
        report = ValidationReport(results=(TestResult("Base image exists", TestStatus.PASS),))
        with patch("capi_builder.pipeline.check_prerequisites"), patch(
            "capi_builder.pipeline.PackerBuild"
        ) as mock_packer, patch("capi_builder.pipeline.FormatConverter") as mock_converter, patch(
            "capi_builder.pipeline.DeviceMountExtractor"
        ) as mock_extractor, patch(
            "capi_builder.pipeline.ValidationEngine"
        ) as mock_engine:
            mock_packer.return_value.run.return_value = base
            mock_engine.return_value.run.return_value = report
            result = pipeline.run()
        assert result.succeeded
        assert result.report is report
        assert [artifact.path for artifact in result.artifacts] == [base.path]
        mock_packer.assert_called_once_with(build_config, resolver.resolve.return_value, pipeline.password)
        mock_converter.return_value.convert.assert_called_once_with(base.path)
        mock_extractor.return_value.extract.assert_called_once_with(base.path, build_config.boot_artifact_dir)
        assert lease_manager.outstanding == 0

    def test_conversion_and_extraction_failures_are_recorded(self, build_config, lease_manager, resolver):
        base = _base_image(build_config)
        pipeline = _pipeline(build_config, lease_manager, resolver)
        with patch("capi_builder.pipeline.check_prerequisites"), patch(
            "capi_builder.pipeline.PackerBuild"
        ) as mock_packer, patch("capi_builder.pipeline.FormatConverter") as mock_converter, patch(
            "capi_builder.pipeline.DeviceMountExtractor"
        ) as mock_extractor, patch(
            "capi_builder.pipeline.ValidationEngine"
        ) as mock_engine:
            mock_packer.return_value.run.return_value = base
            mock_converter.return_value.convert.side_effect = ConversionFailure("stream", "disk full")
            mock_extractor.return_value.extract.side_effect = ExtractionFailure("No kernel image found")
            mock_engine.return_value.run.return_value = ValidationReport(results=())
            result = pipeline.run()
        assert not result.succeeded
        assert result.errors == ["Conversion step 'stream' failed: disk full", "No kernel image found"]
        mock_engine.return_value.run.assert_called_once()
        assert lease_manager.outstanding == 0

    def test_firmware_not_found_aborts(self, build_config, lease_manager, resolver):
        resolver.resolve.side_effect = FirmwareNotFound("ARM64 EFI firmware not found")
        pipeline = _pipeline(build_config, lease_manager, resolver)
        with patch("capi_builder.pipeline.PackerBuild") as mock_packer:
            with pytest.raises(FirmwareNotFound):
                pipeline.run()
        mock_packer.assert_not_called()
        assert lease_manager.outstanding == 0

    def test_local_build_without_firmware_is_a_build_error(self, build_config, lease_manager, resolver):
        resolver.resolve.return_value = None
        pipeline = _pipeline(build_config, lease_manager, resolver)
        with patch("capi_builder.pipeline.PackerBuild") as mock_packer:
            with pytest.raises(BuildError, match="needs resolved boot firmware"):
                pipeline.run()
        mock_packer.assert_not_called()
        assert lease_manager.outstanding == 0

    def test_resources_released_when_extraction_cannot_lease(self, build_config, lease_manager, resolver):
        base = _base_image(build_config)
        pipeline = _pipeline(build_config, lease_manager, resolver)
        held = lease_manager.acquire_port()
        with patch("capi_builder.pipeline.check_prerequisites"), patch(
            "capi_builder.pipeline.PackerBuild"
        ) as mock_packer, patch("capi_builder.pipeline.FormatConverter"), patch(
            "capi_builder.pipeline.DeviceMountExtractor"
        ) as mock_extractor:
            mock_packer.return_value.run.return_value = base
            mock_extractor.return_value.extract.side_effect = ResourceUnavailable("No free NBD device")
            with pytest.raises(ResourceUnavailable):
                pipeline.run()
        assert held.released
        assert lease_manager.outstanding == 0

    def test_vms_terminated_on_failure(self, build_config, lease_manager, resolver):
        pipeline = _pipeline(build_config, lease_manager, resolver)
        pipeline.supervisor = MagicMock()
        with patch("capi_builder.pipeline.ValidationEngine") as mock_engine:
            mock_engine.return_value.run.side_effect = RuntimeError("boom")
            with pytest.raises(RuntimeError):
                pipeline.run(skip_build=True)
        pipeline.supervisor.terminate_all.assert_called_once()

    def test_skip_build_and_test(self, build_config, lease_manager, resolver):
        _base_image(build_config)
        pipeline = _pipeline(build_config, lease_manager, resolver)
        with patch("capi_builder.pipeline.PackerBuild") as mock_packer, patch(
            "capi_builder.pipeline.ValidationEngine"
        ) as mock_engine:
            result = pipeline.run(skip_build=True, skip_test=True)
        mock_packer.assert_not_called()
        mock_engine.assert_not_called()
        resolver.resolve.assert_not_called()
        assert result.report is None
        assert result.succeeded
        assert len(result.artifacts) == 1

    def test_docker_mode_skips_host_conversion(self, build_config, lease_manager, resolver):
        pipeline = _pipeline(build_config, lease_manager, resolver, mode=MODE_DOCKER)
        with patch("capi_builder.pipeline.DockerBuildRunner") as mock_docker, patch(
            "capi_builder.pipeline.FormatConverter"
        ) as mock_converter, patch("capi_builder.pipeline.ValidationEngine") as mock_engine:
            mock_engine.return_value.run.return_value = ValidationReport(results=())
            pipeline.run()
        mock_docker.return_value.run.assert_called_once()
        mock_converter.assert_not_called()
        resolver.resolve.assert_not_called()

    def test_failed_validation_marks_result(self, build_config, lease_manager, resolver, capsys):
        pipeline = _pipeline(build_config, lease_manager, resolver)
        report = ValidationReport(results=(TestResult("Base image exists", TestStatus.FAIL),))
        with patch("capi_builder.pipeline.ValidationEngine") as mock_engine:
            mock_engine.return_value.run.return_value = report
            result = pipeline.run(skip_build=True)
        assert not result.succeeded
        out = capsys.readouterr().out
        assert "BUILD FINISHED WITH ERRORS" in out
        assert "- Base image exists" in out
