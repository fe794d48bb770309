"""Tests for OwnershipReconciler and MountLinker."""

import os

import pytest

from sftpkeeper import MountLinker, OwnershipReconciler


@pytest.fixture
def home(config):
    path = config.homeFor("alice")
    os.makedirs(path)
    return path


@pytest.fixture
def mounts(config):
    for name in ("shared", "uploads"):
        os.makedirs(os.path.join(config.mounts_dir, name))
    return config.mounts_dir


class TestOwnership:

    def test_chowns_everything_below_home(self, config, system, home):
        os.makedirs(os.path.join(home, ".ssh"))
        open(os.path.join(home, ".ssh", "authorized_keys"), "w").close()
        os.makedirs(os.path.join(home, "docs", "deep"))
        open(os.path.join(home, "docs", "deep", "file.txt"), "w").close()
        open(os.path.join(home, "top.txt"), "w").close()

        count = OwnershipReconciler(config, system).fix("alice")

        expected = {
            os.path.join(home, p)
            for p in (".ssh", ".ssh/authorized_keys", "docs", "docs/deep", "docs/deep/file.txt", "top.txt")
        }
        assert set(system.owners) == expected
        assert all(owner == ("alice", "alice") for owner in system.owners.values())
        assert count == len(expected)

    def test_skips_symlinked_entries(self, config, system, home, mounts):
        os.symlink(os.path.join(mounts, "shared"), os.path.join(home, "shared"))
        open(os.path.join(mounts, "shared", "not-alices.txt"), "w").close()

        OwnershipReconciler(config, system).fix("alice")

        assert system.owners == {}

    def test_skips_symlinks_nested_inside_real_dirs(self, config, system, home, mounts):
        os.makedirs(os.path.join(home, "docs"))
        os.symlink(os.path.join(mounts, "uploads"), os.path.join(home, "docs", "uploads"))

        OwnershipReconciler(config, system).fix("alice")

        assert set(system.owners) == {os.path.join(home, "docs")}

    def test_missing_home_is_a_noop(self, config, system):
        assert OwnershipReconciler(config, system).fix("ghost") == 0
        assert system.owners == {}


class TestMountLinker:

    def test_links_every_mount(self, config, home, mounts):
        assert MountLinker(config).sync("alice") == 2

        for name in ("shared", "uploads"):
            link = os.path.join(home, name)
            assert os.path.islink(link)
            assert os.readlink(link) == os.path.join(mounts, name)

    def test_second_run_changes_nothing(self, config, home, mounts):
        linker = MountLinker(config)
        linker.sync("alice")
        first = {n: os.readlink(os.path.join(home, n)) for n in os.listdir(home)}

        assert linker.sync("alice") == 0
        assert {n: os.readlink(os.path.join(home, n)) for n in os.listdir(home)} == first

    def test_existing_file_with_mount_name_left_alone(self, config, home, mounts):
        with open(os.path.join(home, "shared"), "w") as f:
            f.write("mine\n")

        assert MountLinker(config).sync("alice") == 1

        assert not os.path.islink(os.path.join(home, "shared"))
        with open(os.path.join(home, "shared")) as f:
            assert f.read() == "mine\n"
        assert os.path.islink(os.path.join(home, "uploads"))

    def test_existing_symlink_elsewhere_left_alone(self, config, home, mounts, tmp_path):
        os.symlink(str(tmp_path / "somewhere-else"), os.path.join(home, "uploads"))

        assert MountLinker(config).sync("alice") == 1

        assert os.readlink(os.path.join(home, "uploads")) == str(tmp_path / "somewhere-else")

    def test_missing_mounts_dir(self, config, home):
        os.rmdir(config.mounts_dir)
        assert MountLinker(config).sync("alice") == 0
        assert os.listdir(home) == []
