"""Tests for the instances commands."""

import json

from click.testing import CliRunner

from pwrsync.__main__ import main
from pwrsync.core.instances import InstanceStore


def invoke(config_file, *args, output="json", input=None):
    runner = CliRunner()
    return runner.invoke(main, ["--config", str(config_file), "--output", output, *args], input=input)


class TestInstancesList:
    """Test instances list."""

    def test_empty(self, config_file):
        """Test listing without instances."""
        result = invoke(config_file, "instances", "list")
        assert result.exit_code == 0
        assert json.loads(result.output) == []

    def test_lists_instances(self, app_config, config_file):
        """Test listing both branches."""
        store = InstanceStore(app_config.instance_root)
        store.instance_path("release", 4).mkdir(parents=True)
        store.instance_path("pre-release", 0).mkdir(parents=True)
        store.save_latest_info("pre-release", 9)

        result = invoke(config_file, "instances", "list")

        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert [(row["branch"], row["version"], row["is_latest"]) for row in rows] == [
            ("release", 4, False),
            ("pre-release", 0, True),
        ]

    def test_plain_table(self, app_config, config_file):
        """Test the table shows the resolved latest version."""
        store = InstanceStore(app_config.instance_root)
        store.instance_path("release", 0).mkdir(parents=True)
        store.save_latest_info("release", 9)

        result = invoke(config_file, "instances", "list", output="plain")

        assert result.exit_code == 0
        assert "latest (v9)" in result.output


class TestInstancesRename:
    """Test instances rename."""

    def test_rename(self, app_config, config_file):
        """Test setting a display name."""
        store = InstanceStore(app_config.instance_root)
        store.instance_path("release", 4).mkdir(parents=True)

        result = invoke(config_file, "instances", "rename", "release", "4", "Modded")

        assert result.exit_code == 0
        assert store.list_installed_instances()[0].custom_name == "Modded"

    def test_rename_missing(self, config_file):
        """Test renaming a missing instance aborts."""
        result = invoke(config_file, "instances", "rename", "release", "4", "Modded")
        assert result.exit_code == 1
        assert "Instance not found" in result.output


class TestInstancesDelete:
    """Test instances delete."""

    def test_delete_confirmed(self, app_config, config_file):
        """Test deleting after confirmation."""
        store = InstanceStore(app_config.instance_root)
        store.instance_path("release", 4).mkdir(parents=True)

        result = invoke(config_file, "instances", "delete", "release", "4", input="y\n")

        assert result.exit_code == 0
        assert not store.instance_path("release", 4).exists()

    def test_delete_declined(self, app_config, config_file):
        """Test declining keeps the instance."""
        store = InstanceStore(app_config.instance_root)
        store.instance_path("release", 4).mkdir(parents=True)

        result = invoke(config_file, "instances", "delete", "release", "4", input="n\n")

        assert result.exit_code == 1
        assert store.instance_path("release", 4).exists()

    def test_delete_missing(self, config_file):
        """Test deleting a missing instance."""
        result = invoke(config_file, "instances", "delete", "release", "4", "--yes")
        assert result.exit_code == 0
        assert "No instance" in result.output


class TestInstancesMigrate:
    """Test instances migrate."""

    def test_migrate_from(self, app_config, config_file, tmp_path):
        """Test migrating a legacy folder."""
        legacy = tmp_path / "old"
        (legacy / "release-v5" / "Client").mkdir(parents=True)

        result = invoke(config_file, "instances", "migrate", "--from", str(legacy))

        assert result.exit_code == 0
        assert json.loads(result.output) == {"migrated": 1}
        assert (app_config.instance_root / "release" / "5" / "Client").is_dir()

        again = invoke(config_file, "instances", "migrate", "--from", str(legacy))
        assert json.loads(again.output) == {"migrated": 0}

    def test_migrate_nothing(self, config_file):
        """Test migrating without legacy folders."""
        result = invoke(config_file, "instances", "migrate", output="plain")
        assert result.exit_code == 0
        assert "Nothing to migrate" in result.output
