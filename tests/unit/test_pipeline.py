# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for the build pipeline.
"""
import pytest
from conftest import FakeRuntime

from aisandbox.BUILDERS.pipeline import ALL_STAGES, BuildPipeline, Stage
from aisandbox.errors import CommandError, StageError
from aisandbox.MODELS.build_config import BuildConfig


class FakeInjector:
    def __init__(self, config, produce=True):
        self.config = config
        self.produce = produce
        self.calls = 0

    def run(self):
        self.calls += 1
        if self.produce:
            with open(self.config.output_ext4_path, "wb") as f:
                f.truncate(2 * 1024 * 1024)


class FailingSaveRuntime(FakeRuntime):
    def save(self, reference, output_path):
        raise CommandError(["docker", "save", reference], 1, "no space left on device")


def make_pipeline(tmp_path, runtime=None, produce=True):
    config = BuildConfig.load(environ={}, project_dir=str(tmp_path), build_dir=str(tmp_path / ".build"))
    runtime = runtime if runtime is not None else FakeRuntime(images={config.base_image})
    injector = FakeInjector(config, produce)
    return BuildPipeline(config, runtime, injector), runtime, injector


class TestBuildModes:
    """Tests for mode to stage mapping."""

    def test_full(self):
        assert BuildPipeline.stages_for("full") == ALL_STAGES
        assert [s.value for s in ALL_STAGES] == ["inner", "export", "extract", "inject", "host"]

    @pytest.mark.parametrize("mode,stages", [
        ("payload-only", (Stage.INNER,)),
        ("inner-only", (Stage.INNER,)),
        ("inject-only", (Stage.INJECT,)),
        ("finalize-only", (Stage.HOST,)),
        ("host-only", (Stage.HOST,)),
        ("clean", ALL_STAGES),
    ])
    def test_subsets(self, mode, stages):
        assert BuildPipeline.stages_for(mode) == stages

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown build mode"):
            BuildPipeline.stages_for("everything")


class TestBuildPipeline:
    """Tests for BuildPipeline.run."""

    def test_full_run(self, tmp_path):
        pipeline, runtime, injector = make_pipeline(tmp_path)

        results = pipeline.run("full")

        assert [r.name for r in results] == ["inner", "export", "extract", "inject", "host"]
        assert runtime.built == ["ai-dev-sandbox:latest", "ai-dev-sandbox-host:latest"]
        assert injector.calls == 1
        assert (tmp_path / ".build" / "ai-dev-sandbox.ext4").is_file()

    def test_missing_base_image(self, tmp_path):
        pipeline, runtime, _ = make_pipeline(tmp_path, runtime=FakeRuntime())

        with pytest.raises(StageError) as info:
            pipeline.run("full")
        assert info.value.stage == "preflight"
        assert "Base image not found" in str(info.value)
        assert runtime.built == []

    def test_failed_stage_stops_pipeline(self, tmp_path):
        runtime = FailingSaveRuntime(images={"firecracker-base:latest"})
        pipeline, _, injector = make_pipeline(tmp_path, runtime=runtime)

        with pytest.raises(StageError) as info:
            pipeline.run("full")

        assert info.value.stage == "export"
        assert str(info.value).startswith("Stage 'export' failed")
        assert runtime.built == ["ai-dev-sandbox:latest"]
        assert injector.calls == 0

    def test_inject_needs_artifacts(self, tmp_path):
        pipeline, _, injector = make_pipeline(tmp_path)

        with pytest.raises(StageError) as info:
            pipeline.run("inject-only")
        assert info.value.stage == "inject"
        assert injector.calls == 0

    def test_inject_must_produce_image(self, tmp_path):
        pipeline, _, _ = make_pipeline(tmp_path, produce=False)
        build = tmp_path / ".build"
        build.mkdir()
        (build / "base.ext4").write_bytes(b"\0")
        (build / "ai-dev-sandbox.tar").write_bytes(b"tar")

        with pytest.raises(StageError, match="produced no image"):
            pipeline.run("inject-only")

    def test_finalize_only_needs_rootfs(self, tmp_path):
        pipeline, runtime, _ = make_pipeline(tmp_path)

        with pytest.raises(StageError) as info:
            pipeline.run("finalize-only")
        assert info.value.stage == "host"
        assert runtime.built == []

    def test_clean_removes_build_dir(self, tmp_path):
        pipeline, _, _ = make_pipeline(tmp_path)
        stale = tmp_path / ".build" / "stale.ext4"
        stale.parent.mkdir()
        stale.write_bytes(b"old")

        pipeline.run("clean")

        assert not stale.exists()
        assert (tmp_path / ".build" / "ai-dev-sandbox.ext4").is_file()
