"""Tests for configuration, secret redaction, hashing, and scaffolding."""

from __future__ import annotations

import json
import os

import pytest
import yaml

from shipline.deployment.ci import CIGenerator
from shipline.deployment.compose import ComposeGenerator, apply_script
from shipline.deployment.config_manager import ConfigManager, PipelineSettings
from shipline.deployment.models import ArtifactRef, DeploymentTarget, PublishedRef
from shipline.security.hasher import Hasher, is_ignored, read_ignore_patterns
from shipline.security.redaction import REDACTED, is_secret, redact


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("SHIPLINE_"):
            monkeypatch.delenv(key)


# ── ConfigManager ────────────────────────────────────────────────────────────

class TestConfigManager:

    def test_env_template_lists_every_key(self, tmp_path):
        path = ConfigManager().generate_env_template(tmp_path)
        text = path.read_text()
        assert path.name == ".env.example"
        assert text.startswith("# Shipline configuration template")
        assert "SHIPLINE_REGISTRY_PASSWORD=" in text
        assert "SHIPLINE_MAX_ATTEMPTS=5" in text

    def test_defaults(self, tmp_path):
        config = ConfigManager().load_config(tmp_path)
        assert config["SHIPLINE_ENV"] == "development"
        assert config["SHIPLINE_REPOSITORY"] == "app"
        assert config["SHIPLINE_LOG_LEVEL"] == "DEBUG"

    def test_testing_profile(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPLINE_ENV", "testing")
        config = ConfigManager().load_config(tmp_path)
        assert config["SHIPLINE_MAX_ATTEMPTS"] == "2"
        assert config["SHIPLINE_HEALTH_WINDOW"] == "5"

    def test_layer_precedence(self, tmp_path, monkeypatch):
        state = tmp_path / ".shipline"
        state.mkdir()
        (state / "config.json").write_text(json.dumps({
            "SHIPLINE_REPOSITORY": "from-json",
            "SHIPLINE_REGISTRY_HOST": "from-json.example.com",
        }))
        (tmp_path / ".env").write_text(
            "# comment\nSHIPLINE_REPOSITORY=\"from-dotenv\"\nSHIPLINE_DOCKERFILE=Dockerfile.prod\n"
        )
        monkeypatch.setenv("SHIPLINE_DOCKERFILE", "Dockerfile.env")

        config = ConfigManager().load_config(tmp_path)

        assert config["SHIPLINE_REGISTRY_HOST"] == "from-json.example.com"
        assert config["SHIPLINE_REPOSITORY"] == "from-dotenv"
        assert config["SHIPLINE_DOCKERFILE"] == "Dockerfile.env"

    def test_broken_config_json_is_ignored(self, tmp_path):
        (tmp_path / ".shipline").mkdir()
        (tmp_path / ".shipline" / "config.json").write_text("{oops")
        assert ConfigManager().load_config(tmp_path)["SHIPLINE_REPOSITORY"] == "app"

    def test_settings_are_typed_and_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPLINE_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("SHIPLINE_HEALTH_WINDOW", "30")
        settings = ConfigManager().load_settings(tmp_path)
        assert settings.max_attempts == 3
        assert settings.health_window == 30.0
        assert settings.state_dir == tmp_path / ".shipline"
        assert settings.build_context == tmp_path / "."

    def test_settings_repr_hides_secrets(self):
        settings = PipelineSettings(registry_password="hunter2", slack_webhook="https://hooks/x")
        assert "hunter2" not in repr(settings)
        assert "hooks/x" not in repr(settings)

    def test_redacted_masks_secrets(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPLINE_REGISTRY_PASSWORD", "hunter2")
        monkeypatch.setenv("SHIPLINE_SSH_KEY", "~/.ssh/deploy")
        config = ConfigManager().redacted(tmp_path)
        assert config["SHIPLINE_REGISTRY_PASSWORD"] == REDACTED
        assert config["SHIPLINE_SSH_KEY"] == REDACTED
        assert config["SHIPLINE_REPOSITORY"] == "app"

    def test_targets_round_trip_through_yaml(self, tmp_path):
        manager = ConfigManager()
        path = manager.write_targets(tmp_path, [
            DeploymentTarget(target_id="web-1", endpoint="ubuntu@203.0.113.10",
                             health_url="http://203.0.113.10:8000/health"),
        ])
        data = yaml.safe_load(path.read_text())
        assert data["targets"]["web-1"]["endpoint"] == "ubuntu@203.0.113.10"
        assert "last_known_good" not in data["targets"]["web-1"]

        targets = manager.load_targets(tmp_path)
        assert [t.target_id for t in targets] == ["web-1"]
        assert targets[0].remote_dir == "~/app"

    def test_missing_targets_file(self, tmp_path):
        assert ConfigManager().load_targets(tmp_path) == []

    def test_targets_must_be_mapping(self, tmp_path):
        (tmp_path / ".shipline").mkdir()
        (tmp_path / ".shipline" / "targets.yaml").write_text("targets:\n  - web-1\n")
        with pytest.raises(ValueError):
            ConfigManager().load_targets(tmp_path)


# ── Redaction & hashing ──────────────────────────────────────────────────────

class TestRedaction:

    @pytest.mark.parametrize("key,secret", [
        ("SHIPLINE_REGISTRY_PASSWORD", True),
        ("SHIPLINE_SLACK_WEBHOOK", True),
        ("SHIPLINE_SSH_KEY", True),
        ("GITHUB_TOKEN", True),
        ("SHIPLINE_REPOSITORY", False),
    ])
    def test_is_secret(self, key, secret):
        assert is_secret(key) is secret

    def test_empty_secrets_left_visible(self):
        assert redact({"SHIPLINE_REGISTRY_PASSWORD": ""}) == {"SHIPLINE_REGISTRY_PASSWORD": ""}


class TestHasher:

    def test_hash_string(self):
        assert Hasher.hash_string("abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_context_hash_tracks_content(self, tmp_path):
        (tmp_path / "app.py").write_text("print(1)\n")
        before = Hasher.hash_context(tmp_path)
        (tmp_path / "app.py").write_text("print(2)\n")
        assert Hasher.hash_context(tmp_path) != before

    def test_context_hash_ignores_state_and_vcs(self, tmp_path):
        (tmp_path / "app.py").write_text("print(1)\n")
        before = Hasher.hash_context(tmp_path)
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (tmp_path / ".shipline").mkdir()
        (tmp_path / ".shipline" / "events.db").write_bytes(b"\x00")
        assert Hasher.hash_context(tmp_path) == before

    def test_context_hash_honours_dockerignore(self, tmp_path):
        (tmp_path / ".dockerignore").write_text("# local only\n*.log\n!keep.log\n/build/\n**/__pycache__\n")
        (tmp_path / "app.py").write_text("print(1)\n")
        (tmp_path / "keep.log").write_text("a\n")
        before = Hasher.hash_context(tmp_path)

        (tmp_path / "debug.log").write_text("noise\n")
        (tmp_path / "build").mkdir()
        (tmp_path / "build" / "out.bin").write_bytes(b"\x01")
        (tmp_path / "pkg" / "__pycache__").mkdir(parents=True)
        (tmp_path / "pkg" / "__pycache__" / "m.pyc").write_bytes(b"\x02")
        assert Hasher.hash_context(tmp_path) == before

        (tmp_path / "keep.log").write_text("b\n")
        assert Hasher.hash_context(tmp_path) != before

    @pytest.mark.parametrize("path,ignored", [
        ("debug.log", True),
        ("logs/debug.log", True),
        ("keep.log", False),
        ("build/out.bin", True),
        ("src/build.py", False),
    ])
    def test_is_ignored(self, path, ignored):
        patterns = [("*.log", False), ("logs", False), ("keep.log", True), ("build", False)]
        assert is_ignored(path, patterns) is ignored

    def test_read_ignore_patterns(self, tmp_path):
        (tmp_path / ".dockerignore").write_text("\n# c\n./dist/\n!README.md\n")
        assert read_ignore_patterns(tmp_path) == [("dist", False), ("README.md", True)]
        assert read_ignore_patterns(tmp_path / "missing") == []


# ── Generated files ──────────────────────────────────────────────────────────

class TestGenerators:

    def test_github_workflow(self, tmp_path):
        path = CIGenerator().generate_github_actions(tmp_path, "web-1", branch="release")
        data = yaml.safe_load(path.read_text())
        assert path == tmp_path / ".github" / "workflows" / "shipline.yml"
        assert data["concurrency"]["group"] == "shipline-web-1"
        # PyYAML reads the bare `on` key as boolean True
        assert data[True]["push"]["branches"] == ["release"]
        steps = {step.get("name", step.get("uses")): step for step in data["jobs"]["release"]["steps"]}
        assert steps["Install shipline"]["run"] == "pip install ."
        release = steps["Release"]
        assert "--target web-1" in release["run"]
        assert "${{ secrets.SHIPLINE_REGISTRY_PASSWORD }}" in release["env"]["SHIPLINE_REGISTRY_PASSWORD"]

    def test_github_workflow_carries_known_good_between_runs(self, tmp_path):
        path = CIGenerator().generate_github_actions(tmp_path, "web-1")
        steps = yaml.safe_load(path.read_text())["jobs"]["release"]["steps"]
        names = [step.get("name") for step in steps]
        restore, save = steps[names.index("Restore release state")], steps[names.index("Save release state")]

        assert names.index("Restore release state") < names.index("Release") < names.index("Save release state")
        assert restore["uses"] == "actions/cache/restore@v4"
        assert save["uses"] == "actions/cache/save@v4"
        # saved even when the release step fails or rolls back
        assert save["if"] == "always()"
        assert restore["with"]["path"].split() == [".shipline/targets", ".shipline/events.db"]
        assert save["with"]["path"] == restore["with"]["path"]
        assert restore["with"]["restore-keys"] == "shipline-state-web-1-"
        assert save["with"]["key"].startswith("shipline-state-web-1-")
        assert ".shipline/locks" not in restore["with"]["path"]

    def test_compose_file_requires_image(self, tmp_path):
        path = ComposeGenerator().generate_compose(tmp_path / "deploy", service="web", port=9000)
        data = yaml.safe_load(path.read_text())
        assert data["services"]["web"]["image"] == "${SHIPLINE_IMAGE:?image reference required}"
        assert data["services"]["web"]["ports"] == ["9000:9000"]

    def test_apply_script_pins_published_digest(self):
        target = DeploymentTarget(target_id="T1", endpoint="h", remote_dir="/srv/app")
        ref = ArtifactRef(registry_host="ghcr.io", repository="web", digest_or_tag="abc")
        published = PublishedRef(artifact=ref, remote_digest="sha256:" + "c" * 64)

        script = apply_script(target, published, pre_commands=("aws ecr get-login-password | true",))

        assert script.env == {"SHIPLINE_IMAGE": "ghcr.io/web@sha256:" + "c" * 64}
        assert script.workdir == "/srv/app"
        assert script.commands[0] == "aws ecr get-login-password | true"
        assert script.commands[-1].endswith("up -d --force-recreate --remove-orphans")

    def test_apply_script_for_known_good_uses_tag(self):
        target = DeploymentTarget(target_id="T1", endpoint="h")
        ref = ArtifactRef(registry_host="ghcr.io", repository="web", digest_or_tag="abc")
        assert apply_script(target, ref).env["SHIPLINE_IMAGE"] == "ghcr.io/web:abc"
